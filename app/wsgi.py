from app.lgu import create_app

app = create_app()
