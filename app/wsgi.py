from app.ebr import create_app

app = create_app()
