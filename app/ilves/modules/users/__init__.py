"""
Users module (admin).

- User accounts of the current company with role assignment
- Google Authenticator second factor registration
- Self-signed client certificates: issue, PKCS#12 download, revoke
"""
