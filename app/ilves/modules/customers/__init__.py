"""
Customers module (admin).

- Customers CRUD scoped to the current company (list + create + detail/update + remove)
- Invoicing and delivery postal addresses owned by the customer
"""
