import logging
import time

from flask import Flask, g, jsonify, request
from flask_compress import Compress
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .auth import register_auth
from .cache import cache_metrics, configure_cache
from .config import get_config
from .errors import StorefrontError
from .inventory import InventoryService, register_inventory, start_reservation_sweeper
from .orders import OrderService, log_approval_links, register_orders
from .pricing import CartService, register_pricing
from .products import register_products
from .reviews import register_reviews
from .store import make_store
from .wishlist import register_wishlist

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger("storefront").setLevel(level.upper())


def _install_timing(app: Flask, slow_request_ms: int, slow_db_ms: int) -> None:
    @app.before_request
    def _timing_start():
        g._req_start = time.perf_counter()
        g.db_time_ms = 0.0

    @app.after_request
    def _timing_end(resp):
        start = getattr(g, "_req_start", None)
        if start is None:
            return resp
        dur_ms = (time.perf_counter() - start) * 1000.0
        db_ms = float(getattr(g, "db_time_ms", 0.0) or 0.0)
        resp.headers["X-Request-Duration"] = f"{dur_ms:.2f}ms"
        resp.headers["X-DB-Time"] = f"{db_ms:.2f}ms"
        resp.headers["Server-Timing"] = f"app;dur={dur_ms:.2f}, db;dur={db_ms:.2f}"
        if dur_ms >= slow_request_ms:
            app.logger.warning(
                "SLOW_REQUEST method=%s path=%s status=%s dur_ms=%.2f db_ms=%.2f",
                request.method, request.path, resp.status_code, dur_ms, db_ms,
            )
        if db_ms >= slow_db_ms:
            app.logger.warning(
                "SLOW_DB method=%s path=%s status=%s db_ms=%.2f total_ms=%.2f",
                request.method, request.path, resp.status_code, db_ms, dur_ms,
            )
        return resp


def _install_error_handlers(app: Flask, expose_errors: bool) -> None:
    @app.errorhandler(StorefrontError)
    def _storefront_error(e: StorefrontError):
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return jsonify({"success": False, "error": e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):
        app.logger.exception("unhandled error method=%s path=%s", request.method, request.path)
        message = str(e) if expose_errors else "Internal server error"
        return jsonify({"success": False, "error": message}), 500


def create_app(overrides: dict | None = None, store=None) -> Flask:
    cfg = get_config(overrides)
    _configure_logging(cfg.LOG_LEVEL)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = cfg.SECRET_KEY
    CORS(app, resources={r"/*": {"origins": cfg.origins}})

    if cfg.ENABLE_COMPRESSION:
        Compress(app)

    if cfg.LOG_TIMING:
        _install_timing(app, cfg.SLOW_REQUEST_MS, cfg.SLOW_DB_MS)

    configure_cache(cfg.CACHE_ENABLED, cfg.USE_REDIS_CACHE, cfg.REDIS_URL)

    store = store or make_store(cfg)
    inventory = InventoryService(store, cfg)
    cart = CartService(store, inventory, cfg)
    app.extensions["storefront.config"] = cfg
    app.extensions["storefront.store"] = store
    app.extensions["storefront.inventory"] = inventory
    app.extensions["storefront.cart"] = cart
    app.extensions["storefront.orders"] = OrderService(store, inventory, cart, cfg)
    app.extensions["storefront.approval_notifier"] = log_approval_links

    _install_error_handlers(app, expose_errors=not cfg.is_production)

    @app.get("/health")
    def health():
        try:
            db_ok = bool(store.ping())
        except Exception as e:
            app.logger.warning("health check store ping failed: %s", e)
            db_ok = False
        resp = jsonify({"status": "ok", "db": db_ok, "backend": store.name})
        resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return resp

    @app.get("/metrics")
    def metrics():
        m = {"cache": cache_metrics()}
        if cfg.METRICS_PROMETHEUS:
            lines = [
                f"app_cache_hits_total {m['cache']['hits']}",
                f"app_cache_misses_total {m['cache']['misses']}",
                f"app_cache_expired_total {m['cache']['expired']}",
            ]
            return ("\n".join(lines) + "\n", 200, {"Content-Type": "text/plain; version=0.0.4"})
        return jsonify(m)

    register_auth(app)
    register_products(app)
    register_inventory(app)
    register_pricing(app)
    register_orders(app)
    register_reviews(app)
    register_wishlist(app)

    if cfg.RESERVATION_SWEEP:
        start_reservation_sweeper(app)

    app.logger.info("storefront started backend=%s env=%s", store.name, cfg.ENV)
    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=5000, debug=not app.extensions["storefront.config"].is_production)
