# backend/wsgi.py
from trustcore import create_app

app = create_app()
