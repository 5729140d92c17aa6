from app.autoexplora import create_app

app = create_app()
