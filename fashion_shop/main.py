# fashion_shop/main.py
import atexit
import logging
import time

from flask import Flask, g, jsonify, request, session

from fashion_shop.blueprints.admin import admin_bp
from fashion_shop.blueprints.storefront import storefront_bp
from fashion_shop.config import Config
from fashion_shop.database import SessionLocal, close_db, engine, get_db
from fashion_shop.errors import OrderCreationFailed, ShopError, root_cause
from fashion_shop.models import Base, User
from fashion_shop.observability import (
    build_health_report,
    configure_logging,
    ensure_request_id,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from fashion_shop.services.background_jobs import BackgroundJobs

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(storefront_bp)
app.register_blueprint(admin_bp)

logger = logging.getLogger(__name__)


def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)


init_database()

background_jobs = BackgroundJobs(SessionLocal)
app.extensions["background_jobs"] = background_jobs
if Config.BACKGROUND_JOBS_ENABLED:
    background_jobs.start()
    atexit.register(background_jobs.stop)


def is_admin_user() -> bool:
    user = getattr(g, "current_user", None)
    if user:
        return user.is_admin
    return False


@app.before_request
def before_request_logging():
    g.current_user = None
    if 'user_id' in session:
        db = get_db()
        g.current_user = db.query(User).filter_by(userID=session['user_id']).first()
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    if Config.OBSERVABILITY_ENABLED:
        increment_counter(
            "http_requests_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
            },
        )


@app.after_request
def after_request_logging(response):
    started = getattr(g, 'request_started_at', None)
    if started is not None and Config.OBSERVABILITY_ENABLED:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    request_id = getattr(g, 'request_id', None)
    if request_id:
        response.headers[Config.REQUEST_ID_HEADER] = request_id
    return response


@app.teardown_appcontext
def teardown_db(exception):
    try:
        close_db(exception)
    except RuntimeError:
        # Handle case where we're outside of application context during tests
        pass


@app.errorhandler(ShopError)
def handle_shop_error(error: ShopError):
    payload = error.to_dict()
    if isinstance(error, OrderCreationFailed):
        # Show the step that actually failed, not the wrapper
        payload["message"] = root_cause(error).message
    increment_counter("shop_errors_total", labels={"code": error.code})
    logger.info("Request rejected: %s", error.message, extra={"error_code": error.code})
    return jsonify(payload), error.http_status


@app.route('/health', methods=['GET'])
def health():
    report = build_health_report(background_jobs)
    status_code = 200 if report["status"] == "UP" else 503
    return jsonify(report), status_code


@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    if not is_admin_user():
        return jsonify({"success": False, "error": "FORBIDDEN", "message": "Admin access required"}), 403
    return jsonify(get_metrics_snapshot())
