import logging
import os

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_session import Session
from werkzeug.exceptions import HTTPException

from config import Config
from database import db
from errors import LibraryError
from notifications import connect_logging_receiver
from routes import api
from scheduler import start_scheduler

logger = logging.getLogger(__name__)


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    # Configure logging
    logging.basicConfig(level=app.config['LOG_LEVEL'], format='%(asctime)s - %(levelname)s - %(message)s')

    if not app.config.get('SQLALCHEMY_DATABASE_URI'):
        raise ValueError("DATABASE_URL is not set in .env file")

    CORS(app, supports_credentials=True, origins=app.config['CORS_ORIGINS'])

    try:
        db.init_app(app)
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    # Tests run without a server-side session store and fall back to signed cookies
    if app.config.get('SESSION_TYPE'):
        app.config['SESSION_SQLALCHEMY'] = db
        Session(app)

    @app.before_request
    def log_request():
        logger.debug(f"Incoming request: {request.method} {request.path} {request.get_json(silent=True)}")

    @app.route('/')
    def home():
        return jsonify({"message": "Library Circulation Backend"})

    @app.errorhandler(LibraryError)
    def handle_library_error(error):
        logger.debug(f"{type(error).__name__}: {error.message} (entity_id={error.entity_id})")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_error(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.description}), error.code
        logger.error(f"Unhandled error: {str(error)}")
        db.session.rollback()
        return jsonify({'error': 'An unexpected error occurred'}), 500

    app.register_blueprint(api)
    connect_logging_receiver()

    with app.app_context():
        db.create_all()
        logger.debug(f"Database connected: {app.config['SQLALCHEMY_DATABASE_URI']}")

    if app.config['SCHEDULER_ENABLED']:
        start_scheduler(app)

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=True)
