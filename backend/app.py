from flask import Flask, jsonify

from config import Config
from extensions import jwt, babel, cors
from gate import RouteGate, init_gate
from gateway import ProfileChangeFeed, RemoteGateway
from identity import AuthStateStream
from profiles import DisplayNames
from routes import auth_bp, main_bp
from scheduler import ThreadScheduler
from utils import setup_logger
from views import ViewRegistry

logger = setup_logger(__name__)


def create_app(config_class=Config, gateway=None, scheduler=None):
    app = Flask(__name__)
    app.config.from_object(config_class)

    # Initialize extensions
    jwt.init_app(app)
    babel.init_app(app)
    cors.init_app(app, supports_credentials=True)

    # JWT Error Handlers
    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        logger.warning(f"Invalid token error: {error}")
        return jsonify({"msg": "Invalid token", "error": str(error)}), 422

    @jwt.unauthorized_loader
    def missing_token_callback(error):
        logger.warning(f"Missing token error: {error}")
        return jsonify({"msg": "Missing token", "error": str(error)}), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        logger.info(f"Expired token for {jwt_payload.get('sub')}")
        return jsonify({"msg": "Session expired"}), 401

    # One backend client and one tick source for the whole process
    gateway = gateway or RemoteGateway.from_config(app.config)
    scheduler = scheduler or ThreadScheduler()
    auth_stream = AuthStateStream()

    app.extensions['gateway'] = gateway
    app.extensions['scheduler'] = scheduler
    app.extensions['auth_stream'] = auth_stream
    app.extensions['profile_feed'] = ProfileChangeFeed(
        gateway, scheduler, interval=app.config['PROFILE_FEED_INTERVAL'])
    app.extensions['display_names'] = DisplayNames(gateway, auth_stream)
    app.extensions['views'] = ViewRegistry(
        auth_stream, scheduler, idle_ttl=app.config['VIEW_IDLE_TTL'],
        sweep_interval=app.config['VIEW_SWEEP_INTERVAL'])

    init_gate(app, RouteGate.from_config(app.config))

    # Register blueprints
    app.register_blueprint(auth_bp)
    app.register_blueprint(main_bp)

    return app


app = create_app()

if __name__ == '__main__':
    app.run(debug=True)
