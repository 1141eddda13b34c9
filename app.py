"""
Flask backend for the personal meal log.

Whitelisted users sign in with a one-time email link. Each user photographs a
meal and the hosted vision model fills in its title, description,
ingredients, recipe, shopping list and health score. The record is then
stored and shared in a feed that all signed-in users can search, filter and
sort. Photos go to local storage (development) or Amazon S3 (production), and
records go to SQLite or DynamoDB.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import requests
from flask import Flask, Response, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.utils import secure_filename

from meallog.auth.access import (
  AccessCache,
  AccessDenied,
  AccessGate,
  WhitelistUnavailable,
  default_lookups,
  normalise_email,
)
from meallog.auth.identity import AuthProviderError, Identity
from meallog.auth.keyvalue import MemoryStore
from meallog.auth.provider import TokenIdentityProvider
from meallog.auth.signin import (
  DEFAULT_POLICY_TABLE,
  EMAIL_FOR_SIGN_IN_KEY,
  EmailConfirmationRequired,
  EmailLinkSignIn,
  Environment,
)
from meallog.auth.tokens import InvalidSession, SessionTokens
from meallog.config import Settings
from meallog.images import InvalidImageError, inspect_image
from meallog.logbuffer import LogBuffer
from meallog.mailer import MailerError, build_mailer
from meallog.meals import (
  FILTER_MODES,
  MealRecord,
  MealValidationError,
  QuotaExceeded,
  UploadQuota,
  filter_meals,
  new_meal_record,
  sanitize_meal_fields,
  sort_meals,
)
from meallog.ratelimit import RateLimiter, RateLimitExceeded
from meallog.request_guard import Resolver, client_ip, install_request_guard, is_public_host, resolve_host
from meallog.storage import DynamoStore, LocalImageStore, S3ImageStore, SqliteStore, StorageError
from meallog.vision import (
  MalformedAnalysisError,
  NotAMealError,
  VisionClient,
  VisionRateLimited,
  VisionServiceError,
)

EMAIL_COOKIE = "email_for_sign_in"
ANALYSIS_LIMIT_MESSAGE = "You have reached the maximum number of analyses per hour. Please try again later."
PROXY_CACHE_CONTROL = "public, max-age=31536000, immutable"
MAX_PROXY_REDIRECTS = 3


@dataclass
class Services:
  """Long-lived collaborators created once per application."""

  settings: Settings
  store: Any
  images: Any
  tokens: SessionTokens
  access_cache: AccessCache
  inbound_limiter: RateLimiter
  analysis_limiter: RateLimiter
  quota: UploadQuota
  vision: Any
  mailer: Any
  http: requests.Session
  log_buffer: LogBuffer


def _build_storage(settings: Settings) -> Tuple[Any, Any]:
  """Return the (record store, image store) pair for the configured backend."""
  if settings.use_aws_backend:
    if not settings.aws_bucket_name:
      raise RuntimeError("AWS_BUCKET_NAME must be set when STORAGE_BACKEND=aws.")
    if not settings.aws_meals_table:
      raise RuntimeError("AWS_MEALS_TABLE must be set when STORAGE_BACKEND=aws.")
    if len(settings.aws_whitelist_tables) != len(settings.whitelist_collections):
      raise RuntimeError("AWS_WHITELIST_TABLES must name one table per whitelist collection.")
    store = DynamoStore.from_names(
      settings.aws_meals_table,
      dict(zip(settings.whitelist_collections, settings.aws_whitelist_tables)),
      region=settings.aws_region,
    )
    images = S3ImageStore(settings.aws_bucket_name, region=settings.aws_region, acl=settings.aws_s3_acl)
  else:
    store = SqliteStore(settings.sqlite_db_path, settings.whitelist_collections)
    images = LocalImageStore(settings.uploads_dir)
  store.initialise()
  return store, images


def _bearer_token() -> Optional[str]:
  auth_header = request.headers.get("Authorization", "")
  if not auth_header.startswith("Bearer "):
    return None
  return auth_header.split(" ", 1)[1].strip() or None


def create_app(
  settings: Optional[Settings] = None,
  *,
  vision_client: Any = None,
  mailer: Any = None,
  http_session: Optional[requests.Session] = None,
  clock: Callable[[], float] = time.time,
  resolver: Resolver = resolve_host,
) -> Flask:
  """Instantiate the Flask application and register routes."""
  settings = settings or Settings.from_env()
  app = Flask(__name__)
  CORS(app, resources={r"/*": {"origins": list(settings.cors_origins)}})

  log_buffer = LogBuffer(capacity=settings.log_buffer_capacity)
  log_buffer.attach(logging.getLogger("meallog"), app.logger)

  store, images = _build_storage(settings)
  if not settings.use_aws_backend:
    app.config["UPLOAD_FOLDER"] = str(settings.uploads_dir)

  services = Services(
    settings=settings,
    store=store,
    images=images,
    tokens=SessionTokens(
      settings.jwt_secret_key,
      session_ttl_seconds=settings.jwt_expiration_minutes * 60,
      link_ttl_seconds=settings.magic_link_expiration_minutes * 60,
      clock=clock,
    ),
    access_cache=AccessCache(
      MemoryStore(),
      validity_seconds=settings.access_cache_days * 24 * 60 * 60,
      clock=clock,
    ),
    inbound_limiter=RateLimiter(
      settings.rate_limit_window_seconds,
      settings.rate_limit_max_requests,
      sweep_threshold=settings.rate_limit_sweep_threshold,
      clock=clock,
    ),
    analysis_limiter=RateLimiter(
      settings.analysis_rate_limit_window_seconds,
      settings.analysis_rate_limit_max_requests,
      sweep_threshold=settings.rate_limit_sweep_threshold,
      clock=clock,
    ),
    quota=UploadQuota(store, limit=settings.monthly_upload_limit, clock=clock),
    vision=vision_client
    or VisionClient(settings.gemini_api_key, model=settings.gemini_model, timeout=settings.gemini_timeout),
    mailer=mailer or build_mailer(settings.mail_backend, sender=settings.mail_sender, region=settings.aws_region),
    http=http_session or requests.Session(),
    log_buffer=log_buffer,
  )
  app.extensions["meallog"] = services
  lookups = default_lookups(store, settings.whitelist_collections)

  install_request_guard(app, services.inbound_limiter, settings.guarded_routes)

  def _provider(token: Optional[str] = None) -> TokenIdentityProvider:
    return TokenIdentityProvider(services.tokens, services.mailer, session_token=token)

  def _gate(provider: TokenIdentityProvider) -> AccessGate:
    return AccessGate(
      services.access_cache,
      lookups,
      allow_list=settings.allow_list,
      sign_out=provider.sign_out,
    )

  def _email_link_flow(provider: TokenIdentityProvider, store_state: MemoryStore) -> EmailLinkSignIn:
    return EmailLinkSignIn(
      provider,
      _gate(provider),
      store_state,
      continue_url=f"{settings.public_base_url}/login",
    )

  async def _authorized_identity() -> Identity:
    """Restore the session from the bearer token and re-run the access gate."""
    token = _bearer_token()
    identity = services.tokens.verify_session(token)
    provider = _provider(token)
    decision = await _gate(provider).authorize(identity)
    if not decision.granted:
      raise AccessDenied(identity.email, decision.reason)
    return identity

  def _error(message: str, status: int, **extra: Any) -> Tuple[Response, int]:
    body: Dict[str, Any] = {"error": message}
    body.update(extra)
    return jsonify(body), status

  @app.errorhandler(InvalidSession)
  def _handle_invalid_session(exc: InvalidSession):
    return _error(str(exc), 401)

  @app.errorhandler(AccessDenied)
  def _handle_access_denied(exc: AccessDenied):
    if exc.email:
      return _error(f"Access denied: {exc.email} is not on the list.", 403, reason=exc.reason)
    return _error("Access denied: no email address available.", 403, reason=exc.reason)

  @app.errorhandler(WhitelistUnavailable)
  def _handle_whitelist_unavailable(exc: WhitelistUnavailable):
    app.logger.error("Whitelist unavailable: %s", exc)
    return _error("Could not check the access list. Please try again later.", 503)

  @app.errorhandler(AuthProviderError)
  def _handle_provider_error(exc: AuthProviderError):
    return _error(str(exc), 400, code=exc.code)

  @app.errorhandler(EmailConfirmationRequired)
  def _handle_email_required(exc: EmailConfirmationRequired):
    return _error(str(exc), 400, code="email-required")

  @app.errorhandler(RateLimitExceeded)
  def _handle_rate_limited(exc: RateLimitExceeded):
    response, status = _error(str(exc), 429)
    response.headers["Retry-After"] = str(int(exc.retry_after) + 1)
    return response, status

  @app.errorhandler(QuotaExceeded)
  def _handle_quota(exc: QuotaExceeded):
    return _error(str(exc), 429, limit=exc.limit)

  @app.errorhandler(InvalidImageError)
  def _handle_invalid_image(exc: InvalidImageError):
    return _error(str(exc), 400)

  @app.errorhandler(MealValidationError)
  def _handle_invalid_meal(exc: MealValidationError):
    return _error(str(exc), 400)

  @app.errorhandler(NotAMealError)
  def _handle_not_a_meal(exc: NotAMealError):
    return _error("The AI thinks this is not a meal.", 422, isFood=False)

  @app.errorhandler(VisionRateLimited)
  def _handle_vision_rate_limited(exc: VisionRateLimited):
    return _error(str(exc), 429)

  @app.errorhandler(MalformedAnalysisError)
  def _handle_malformed_analysis(exc: MalformedAnalysisError):
    app.logger.warning("Vision model returned an unusable answer: %s", exc)
    return _error(f"Analysis failed: {exc}", 502)

  @app.errorhandler(VisionServiceError)
  def _handle_vision_error(exc: VisionServiceError):
    app.logger.exception("Vision analysis failed: %s", exc)
    return _error(f"Analysis failed: {exc}", 502)

  @app.errorhandler(MailerError)
  def _handle_mailer_error(exc: MailerError):
    return _error(f"Sending failed: {exc}", 502)

  @app.errorhandler(StorageError)
  def _handle_storage_error(exc: StorageError):
    app.logger.exception("Storage operation failed: %s", exc)
    return _error("Persistence failed", 502, details=str(exc))

  @app.route("/health", methods=["GET"])
  def health() -> Tuple[Dict[str, str], int]:
    """Simple health-check endpoint."""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}, 200

  @app.route("/auth/strategy", methods=["GET"])
  def sign_in_strategy() -> Tuple[Dict[str, Any], int]:
    """Tell the client which interactive sign-in method suits its environment."""
    display_mode = request.headers.get("X-Display-Mode", "").strip().lower()
    standalone = display_mode == "standalone" or request.args.get("standalone") in {"1", "true"}
    environment = Environment.from_user_agent(request.headers.get("User-Agent"), standalone=standalone)
    rule, policy = DEFAULT_POLICY_TABLE.match(environment)
    return {"environment": asdict(environment), "rule": rule, **policy.to_dict()}, 200

  @app.route("/auth/magic-link", methods=["POST"])
  async def send_magic_link():
    """Email a one-time sign-in link to a whitelisted address."""
    payload = request.get_json(silent=True) or {}
    email = normalise_email(payload.get("email"))
    if not email:
      return _error("Email is required.", 400)

    state = MemoryStore()
    flow = _email_link_flow(_provider(), state)
    try:
      await flow.send_link(email)
    except AccessDenied:
      return _error(f"Email not authorized: {email}", 403)

    response = jsonify({"message": "Check your email to sign in.", "email": email})
    response.set_cookie(
      EMAIL_COOKIE,
      state.get(EMAIL_FOR_SIGN_IN_KEY) or email,
      max_age=settings.magic_link_expiration_minutes * 60,
      httponly=True,
      samesite="Lax",
    )
    return response, 202

  @app.route("/auth/magic-link/complete", methods=["POST"])
  async def complete_magic_link():
    """Exchange a sign-in link for a session token."""
    payload = request.get_json(silent=True) or {}
    link = payload.get("link") or ""
    remembered = request.cookies.get(EMAIL_COOKIE)
    state = MemoryStore({EMAIL_FOR_SIGN_IN_KEY: remembered} if remembered else None)

    provider = _provider()
    flow = _email_link_flow(provider, state)
    identity, decision = await flow.complete(link, payload.get("email"))
    if not decision.granted:
      raise AccessDenied(identity.email, decision.reason)

    response = jsonify({"token": provider.session_token, "user": identity.to_dict()})
    response.delete_cookie(EMAIL_COOKIE)
    return response, 200

  @app.route("/auth/me", methods=["GET"])
  async def session():
    """Return the signed-in user after re-checking their access."""
    identity = await _authorized_identity()
    return {"user": identity.to_dict()}, 200

  @app.route("/auth/logout", methods=["POST"])
  async def logout():
    token = _bearer_token()
    if not token:
      return _error("Authorization header missing or invalid.", 401)
    await _provider(token).sign_out()
    return {"message": "Signed out"}, 200

  @app.route("/api/analyze", methods=["POST"])
  async def analyze():
    """Run the vision model on a base64 image and return the extracted fields."""
    await _authorized_identity()
    services.analysis_limiter.hit(client_ip(request), ANALYSIS_LIMIT_MESSAGE)

    payload = request.get_json(silent=True) or {}
    image_base64 = payload.get("imageBase64") or ""
    mime_type = payload.get("mimeType") or ""
    if not image_base64 or not mime_type:
      return _error("Invalid input for analysis", 400)
    if image_base64.startswith("data:") and "," in image_base64:
      image_base64 = image_base64.split(",", 1)[1]
    if len(image_base64) > settings.max_analysis_payload_chars:
      return _error("Image is too large for analysis", 413)

    analysis = services.vision.analyze(image_base64, mime_type)
    return analysis.to_dict(), 200

  @app.route("/api/meals", methods=["POST"])
  async def create_meal():
    """Store a meal photo together with its (possibly AI-filled) fields."""
    identity = await _authorized_identity()
    services.quota.check(identity.uid)

    upload_key = "photo" if "photo" in request.files else "image"
    uploaded_file = request.files.get(upload_key)
    if uploaded_file is None or uploaded_file.filename == "":
      return _error("No image provided", 400)

    fields = sanitize_meal_fields(request.form)
    binary_content = uploaded_file.read()
    info = inspect_image(binary_content)

    stem = secure_filename(Path(uploaded_file.filename).stem).lower() or "meal"
    filename = f"meals/{identity.uid}/{int(clock() * 1000)}_{stem}{info.extension}"
    image_url = services.images.save(binary_content, filename, info.mime_type, base_url=request.host_url)

    record = new_meal_record(identity, image_url, fields, now=datetime.fromtimestamp(clock(), tz=timezone.utc))
    services.store.insert_meal(record.to_dict())
    app.logger.info("Stored meal %s for %s", record.id, identity.email)
    return {"meal": record.to_dict()}, 201

  @app.route("/api/meals", methods=["GET"])
  async def list_meals():
    """Return the shared feed, filtered, searched and sorted."""
    identity = await _authorized_identity()
    mode = request.args.get("filter", "all")
    if mode not in FILTER_MODES:
      return _error(f"Unknown filter: {mode}", 400)

    meals = [MealRecord.from_mapping(row) for row in services.store.list_meals()]
    meals = filter_meals(meals, mode=mode, user_id=identity.uid, query=request.args.get("q", ""))
    meals = sort_meals(
      meals,
      field=request.args.get("sort", "date"),
      direction=request.args.get("direction", "desc"),
    )
    if not meals:
      return {"items": [], "message": "feed empty"}, 200
    return {"items": [meal.to_dict() for meal in meals]}, 200

  @app.route("/api/proxy-image", methods=["GET"])
  def proxy_image():
    """Fetch a remote image so the browser can use it without CORS issues.

    Only public http(s) hosts are fetched; internal addresses are refused.
    """
    url = request.args.get("url")
    if not url:
      return Response("Missing URL", status=400, mimetype="text/plain")
    target = url
    # Redirects are followed by hand so every hop passes the address check.
    for _ in range(MAX_PROXY_REDIRECTS + 1):
      parts = urlsplit(target)
      try:
        allowed = parts.scheme in {"http", "https"} and is_public_host(parts.hostname, resolver)
      except (OSError, UnicodeError) as exc:
        app.logger.error("Proxy could not resolve %s: %s", target, exc)
        return Response("Error fetching image", status=500, mimetype="text/plain")
      if not allowed:
        app.logger.warning("Proxy refused %s", target)
        return Response("Unsupported URL", status=400, mimetype="text/plain")

      try:
        upstream = services.http.get(target, timeout=15, allow_redirects=False)
        if not upstream.is_redirect:
          upstream.raise_for_status()
          break
      except requests.RequestException as exc:
        app.logger.error("Proxy error for %s: %s", target, exc)
        return Response("Error fetching image", status=500, mimetype="text/plain")
      target = urljoin(target, upstream.headers["Location"])
    else:
      app.logger.error("Proxy gave up on %s after %d redirects", url, MAX_PROXY_REDIRECTS)
      return Response("Error fetching image", status=500, mimetype="text/plain")

    response = Response(
      upstream.content,
      status=200,
      mimetype=upstream.headers.get("Content-Type", "application/octet-stream"),
    )
    response.headers["Cache-Control"] = PROXY_CACHE_CONTROL
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response

  if settings.debug_console:
    @app.route("/debug/logs", methods=["GET"])
    def debug_logs() -> Tuple[Dict[str, Any], int]:
      return {"logs": services.log_buffer.entries()}, 200

    @app.route("/debug/logs", methods=["DELETE"])
    def clear_debug_logs() -> Tuple[Dict[str, Any], int]:
      services.log_buffer.clear()
      return {"logs": []}, 200

  if not settings.use_aws_backend:
    @app.route("/uploads/<path:filename>", methods=["GET"])
    def serve_upload(filename: str):
      """Serve locally stored uploads during development."""
      return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

  return app


if __name__ == "__main__":
  flask_app = create_app()
  flask_app.run(host="0.0.0.0", port=5000, debug=True)
