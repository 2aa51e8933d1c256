# backend/wsgi.py
from lounge import create_app

app = create_app()
