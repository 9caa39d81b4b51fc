# backend/wsgi.py
from cinepos import create_app

app = create_app()
