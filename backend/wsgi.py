# backend/wsgi.py
from trustchain import create_app

app = create_app()
