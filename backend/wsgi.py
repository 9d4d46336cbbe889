# backend/wsgi.py
from murimi_pos import create_app

app = create_app()
