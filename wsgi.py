"""WSGI entry point for Gunicorn."""
# Import the Flask app
from billing_ledger import create_app

# Create the application instance
app = create_app()

if __name__ == "__main__":
    app.run()
