"""Flask application factory."""
import logging
from flask import Flask, jsonify
from billing_ledger.database import init_db


def configure_logging(app):
    """Attach one stream handler to the package logger using LOG_LEVEL / LOG_FORMAT."""
    logger = logging.getLogger('billing_ledger')
    logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(app.config.get('LOG_FORMAT')))
        logger.addHandler(handler)


def create_app(config_object='config.Config', test_config=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)
    if test_config:
        app.config.update(test_config)

    configure_logging(app)

    # Initialize database
    init_db(app)

    # Error Handlers
    from billing_ledger.exceptions import LedgerError

    @app.errorhandler(LedgerError)
    def handle_ledger_error(error):
        """Render ledger exceptions raised by API routes as JSON."""
        if error.status_code >= 500:
            app.logger.error(f"{type(error).__name__} [{error.status_code}]: {error.message}")
        else:
            app.logger.warning(f"{type(error).__name__} [{error.status_code}]: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    # Register CLI commands
    from billing_ledger.cli_commands import init_cli_commands
    init_cli_commands(app)

    return app
