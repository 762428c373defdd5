"""
Точка входа WSGI: `gunicorn wsgi:app` или `flask --app wsgi run`.
"""

import os

from app import create_app

app = create_app()


if __name__ == "__main__":
    is_production = os.environ.get("FLASK_ENV", "").lower() == "production"
    app.run(debug=not is_production)
