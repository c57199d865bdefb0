import logging

from flask import Flask, jsonify
from flask_cors import CORS
from asgiref.wsgi import WsgiToAsgi

from goalengine.config import Settings, settings
from goalengine import errors
from goalengine.runtime import EngineRuntime

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    errors.NotFound: 404,
    errors.ValidationError: 400,
    errors.ProviderError: 502,
    errors.OperationTimeout: 504,
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(runtime: EngineRuntime = None, app_settings: Settings = None) -> Flask:
    app_settings = app_settings or settings
    runtime = runtime or EngineRuntime(app_settings)

    app = Flask(__name__)
    app.extensions["goalengine"] = runtime
    # Enable CORS
    CORS(app, origins=app_settings.cors_origins_list)

    @app.errorhandler(errors.EngineError)
    def handle_engine_error(e: errors.EngineError):
        status = next((code for cls, code in ERROR_STATUS.items() if isinstance(e, cls)), 500)
        if status == 500:
            logger.error(f"Unhandled engine error: {e.kind}: {e.message}")
        body = {"detail": e.message, "error_code": e.kind, "context": e.to_dict()["context"]}
        if isinstance(e, errors.ProviderError):
            body["severity"] = e.severity
        return jsonify(body), status

    @app.route("/")
    async def home():
        return jsonify({
            "message": app_settings.APP_NAME,
            "version": app_settings.APP_VERSION,
            "status": "running"
        })

    @app.route("/health")
    async def health():
        engine = runtime.engine
        database = await runtime.call_async(engine.store.ping())
        body = {
            "status": "healthy" if database else "unhealthy",
            "database": "connected" if database else "unreachable",
            "providers": engine.providers.count(),
            "tools": engine.tools.count(),
            "resources": engine.resources.snapshot.to_dict(),
            "admitted_goals": engine.resources.active_count,
        }
        return jsonify(body), 200 if database else 500

    # Blueprints
    from goalengine.api.routes_goals import bp as goals_bp
    from goalengine.api.routes_chat import bp as chat_bp

    app.register_blueprint(goals_bp)
    app.register_blueprint(chat_bp)

    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()

# ASGI entry point for uvicorn
asgi_app = WsgiToAsgi(app)
