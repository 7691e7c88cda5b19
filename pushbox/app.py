import atexit
import io
import logging
import os
import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    g,
    has_request_context,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    send_file,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFError, CSRFProtect

from . import storage
from .assets import AssetTable
from .config import BYTES_PER_MB, ShareConfig, load_config
from .names import PhraseGenerator
from .sessions import SESSION_COOKIE_NAME, SessionCookieSigner, SessionStore
from .storage import (
    InvalidNameError,
    NoFilenameError,
    RecordError,
    RedirectTarget,
    ServedFile,
    ShareError,
    StorageIOError,
)

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10 MB per log file
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
SESSION_PURGE_INTERVAL_MINUTES = 15
TEMP_CLEANUP_INTERVAL_HOURS = 1

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

INVALID_LOGIN_LOCATION = ".?error=invalid-login"
EXPIRED_FORM_LOCATION = ".?error=expired-form"
NOT_LOGGED_IN_MESSAGE = "You are not logged in"


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


_base_lifecycle_logger = logging.getLogger("pushbox.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


def configure_file_logging(logs_dir: Path) -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


@dataclass
class ShareContext:
    """Everything a request needs, owned by one application instance."""

    config: ShareConfig
    sessions: SessionStore
    signer: SessionCookieSigner
    generator: PhraseGenerator
    assets: AssetTable


limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=os.environ.get("PUSHBOX_RATE_LIMIT_STORAGE", "memory://"),
)
csrf = CSRFProtect()
bp = Blueprint("pushbox", __name__)


def share_context() -> ShareContext:
    return current_app.extensions["pushbox"]


def login_rate_limit_string() -> str:
    return f"{share_context().config.login_rate_limit_per_minute} per minute"


def upload_rate_limit_string() -> str:
    return f"{share_context().config.upload_rate_limit_per_hour} per hour"


def _plain_text(message: str, status: int = 200) -> Response:
    response = make_response(message, status)
    response.mimetype = "text/plain"
    return response


def _is_api_path() -> bool:
    return request.path.startswith("/upload/")


def current_username() -> Optional[str]:
    context = share_context()
    token = context.signer.loads(request.cookies.get(SESSION_COOKIE_NAME))
    return context.sessions.validate(token)


def require_session(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        username = current_username()
        if username is None:
            lifecycle_logger.warning(
                "session_required endpoint=%s ip=%s",
                request.endpoint,
                request.remote_addr or "unknown",
            )
            return _plain_text(NOT_LOGGED_IN_MESSAGE, 401)
        g.username = username
        return view(*args, **kwargs)

    return wrapped


def require_api_key(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        provided = (request.headers.get("X-API-Key") or "").strip()
        if share_context().config.api_key_matches(provided):
            return view(*args, **kwargs)

        lifecycle_logger.warning(
            "api_auth_failed endpoint=%s method=%s ip=%s",
            request.endpoint,
            request.method,
            request.remote_addr or "unknown",
        )
        return make_response(jsonify({"error": "API authentication required."}), 401)

    return wrapped


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream(field: str = "pushfile") -> Iterator[tuple]:
    """Yield ``(supplied_name, stream)`` for the upload field, closing it afterwards."""

    file_storage = request.files.get(field)
    if file_storage is not None:
        try:
            yield file_storage.filename, file_storage.stream
        finally:
            _close_stream_safely(
                file_storage.stream,
                f"upload_stream filename={sanitize_log_value(file_storage.filename or 'unknown')}",
            )
        return

    value = request.form.get(field)
    if value is None:
        raise NoFilenameError(f"No {field} field in upload")
    yield request.form.get("filename"), io.BytesIO(value.encode("utf-8"))


@bp.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@bp.after_app_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@bp.after_app_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "script-src 'self'; "
        "style-src 'self'; "
        "img-src 'self' data:; "
        "connect-src 'self';"
    )
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@bp.app_errorhandler(ShareError)
def handle_share_error(error: ShareError):
    if isinstance(error, StorageIOError):
        lifecycle_logger.error(
            "storage_failure path=%s error=%s cause=%s",
            sanitize_log_value(request.path),
            sanitize_log_value(str(error)),
            sanitize_log_value(str(error.__cause__ or "-")),
        )
    else:
        lifecycle_logger.info(
            "request_rejected path=%s error=%s status=%d",
            sanitize_log_value(request.path),
            type(error).__name__,
            error.status_code,
        )
    if _is_api_path():
        return jsonify(error.to_payload()), error.status_code
    return _plain_text(str(error), error.status_code)


@bp.app_errorhandler(OSError)
def handle_os_error(error: OSError):
    lifecycle_logger.error(
        "unexpected_os_error path=%s error=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(str(error)),
    )
    return handle_share_error(StorageIOError("Internal storage error"))


@bp.app_errorhandler(404)
def not_found(error):
    return render_template("404.html"), 404


@bp.app_errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    message = "File too large"
    if _is_api_path() or (
        request.accept_mimetypes.accept_json and not request.accept_mimetypes.accept_html
    ):
        return jsonify({"error": message}), 413
    return _plain_text(message, 413)


@bp.app_errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    lifecycle_logger.warning(
        "rate_limited path=%s ip=%s",
        sanitize_log_value(request.path),
        request.remote_addr or "unknown",
    )
    if _is_api_path() or (
        request.accept_mimetypes.accept_json and not request.accept_mimetypes.accept_html
    ):
        return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429
    return _plain_text("Too many requests. Please try again later.", 429)


@bp.app_errorhandler(CSRFError)
def handle_csrf_error(error):
    lifecycle_logger.warning(
        "csrf_rejected path=%s reason=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(getattr(error, "description", "")),
    )
    return redirect(EXPIRED_FORM_LOCATION)


@bp.route("/")
def index():
    if current_username() is not None:
        return redirect("manage")
    return render_template("index.html", error=request.args.get("error"))


@bp.route("/login", methods=["POST"])
@limiter.limit(lambda: login_rate_limit_string())
def login():
    context = share_context()
    username = request.form.get("username", "").strip()
    password = request.form.get("password", "")

    if not username or not context.config.authenticate(username, password):
        lifecycle_logger.warning(
            "login_failed username=%s ip=%s",
            sanitize_log_value(username),
            request.remote_addr or "unknown",
        )
        return redirect(INVALID_LOGIN_LOCATION)

    token = context.sessions.create(username)
    response = redirect("manage")
    response.set_cookie(
        SESSION_COOKIE_NAME,
        context.signer.dumps(token),
        max_age=int(context.sessions.ttl_seconds),
        httponly=True,
        samesite="Lax",
        secure=context.config.session_cookie_secure,
    )
    lifecycle_logger.info("login_succeeded username=%s", sanitize_log_value(username))
    return response


@bp.route("/logout")
def logout():
    context = share_context()
    token = context.signer.loads(request.cookies.get(SESSION_COOKIE_NAME))
    context.sessions.invalidate(token)
    response = redirect(".")
    response.delete_cookie(SESSION_COOKIE_NAME, httponly=True, samesite="Lax")
    return response


@bp.route("/manage")
@require_session
def manage():
    records = storage.list_records(share_context().config.storage_root)
    return render_template("manage.html", username=g.username, records=records)


@bp.route("/listing")
@require_session
def listing():
    records = storage.list_records(share_context().config.storage_root)
    return jsonify(
        {
            "username": g.username,
            "files": [{"name": name, "meta": record.to_dict()} for name, record in records],
        }
    )


@bp.route("/delete/<name>")
@require_session
def delete(name: str):
    storage.delete_item(share_context().config.storage_root, name)
    lifecycle_logger.info(
        "item_deleted_by_user name=%s username=%s",
        sanitize_log_value(name),
        sanitize_log_value(g.username),
    )
    return _plain_text("Deleted")


@bp.route("/rename/<source>/<target>")
@require_session
def rename(source: str, target: str):
    storage.rename_item(share_context().config.storage_root, source, target)
    lifecycle_logger.info(
        "item_renamed_by_user source=%s target=%s username=%s",
        sanitize_log_value(source),
        sanitize_log_value(target),
        sanitize_log_value(g.username),
    )
    return _plain_text("Renamed")


@csrf.exempt
@bp.route("/upload/<kind>", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
@require_api_key
def upload_item(kind: str):
    context = share_context()
    with upload_stream() as (supplied_name, stream):
        url = storage.upload(
            context.config.storage_root,
            kind,
            supplied_name,
            stream,
            generator=context.generator,
            external_base=context.config.external_url,
            attempts=context.config.name_attempts,
        )
    return jsonify({"url": url})


@bp.route("/<path:path>")
def serve(path: str):
    context = share_context()
    asset = context.assets.get(path)
    if asset is not None:
        data, mimetype = asset
        return Response(data, mimetype=mimetype)

    try:
        resolved = storage.resolve(context.config.storage_root, path, context.config.external_url)
    except (InvalidNameError, RecordError):
        lifecycle_logger.info("item_missing path=%s", sanitize_log_value(path))
        abort(404)

    if isinstance(resolved, ServedFile):
        lifecycle_logger.info("item_served name=%s kind=file", sanitize_log_value(path))
        try:
            return send_file(
                resolved.path,
                as_attachment=False,
                download_name=resolved.display_name,
            )
        except FileNotFoundError:
            lifecycle_logger.warning("item_missing_race name=%s", sanitize_log_value(path))
            abort(404)
    if isinstance(resolved, RedirectTarget):
        lifecycle_logger.info("item_served name=%s kind=url", sanitize_log_value(path))
        return redirect(resolved.url)

    lifecycle_logger.info("item_served name=%s kind=text", sanitize_log_value(path))
    return render_template("text.html", name=path, view=resolved)


def create_app(
    config: Optional[ShareConfig] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Flask:
    """Build a Flask application serving the storage root named by *config*."""

    config = config or load_config()
    storage.ensure_storage_root(config.storage_root)
    if config.logs_dir is not None:
        configure_file_logging(config.logs_dir)

    app = Flask(__name__, static_folder=None)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["MAX_CONTENT_LENGTH"] = int(config.max_upload_size_mb * BYTES_PER_MB)
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = config.session_cookie_secure
    app.config["WTF_CSRF_TIME_LIMIT"] = int(config.session_ttl_hours * 3600)
    if overrides:
        app.config.update(overrides)
    app.logger.setLevel(numeric_level)

    if not config.session_cookie_secure and not app.config.get("TESTING", False):
        logging.getLogger("pushbox.security").warning(
            "SECURITY WARNING: session_cookie_secure is disabled. "
            "Cookies will be transmitted over unencrypted HTTP connections. "
            "Serve pushbox behind HTTPS and enable session_cookie_secure."
        )

    app.extensions["pushbox"] = ShareContext(
        config=config,
        sessions=SessionStore(config.session_ttl_hours * 3600),
        signer=SessionCookieSigner(config.secret_key),
        generator=PhraseGenerator.from_files(),
        assets=AssetTable.from_directory(),
    )
    limiter.init_app(app)
    csrf.init_app(app)
    app.register_blueprint(bp)
    return app


def start_maintenance(app: Flask) -> BackgroundScheduler:
    """Schedule session purging and temporary file cleanup for *app*."""

    context: ShareContext = app.extensions["pushbox"]
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=context.sessions.purge_expired,
        trigger="interval",
        minutes=SESSION_PURGE_INTERVAL_MINUTES,
        id="purge_expired_sessions",
        name="Purge expired sessions",
        replace_existing=True,
    )
    scheduler.add_job(
        func=storage.cleanup_temp_files,
        args=[context.config.storage_root],
        trigger="interval",
        hours=TEMP_CLEANUP_INTERVAL_HOURS,
        id="cleanup_temp_files",
        name="Clean up temporary files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))
    return scheduler


def main() -> None:
    config = load_config()
    app = create_app(config)
    start_maintenance(app)
    host, port = config.bind_host_port
    lifecycle_logger.info(
        "server_starting bind_addr=%s storage_root=%s external_url=%s",
        config.bind_addr,
        config.storage_root,
        config.external_url,
    )
    app.run(host=host, port=port, threaded=True, debug=False)


if __name__ == "__main__":
    main()
