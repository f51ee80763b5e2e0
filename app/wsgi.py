from app.ilves import create_app

app = create_app()
