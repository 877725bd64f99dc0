"""HTTP API for authentication, profiles and the IBAN tools."""

from __future__ import annotations

import base64
import logging
from datetime import timedelta
from typing import Callable, Dict, Optional, Type, TypeVar

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from . import iban
from .audit import STATUS_FAILURE, STATUS_SUCCESS, audit_login_attempt, mask_email
from .charters import register_charter_routes
from .config import Settings
from .database import Database, DuplicateRecordError
from .errors import (
    INVALID_CREDENTIALS,
    AppError,
    EmailTakenError,
    ForbiddenFieldError,
    InvalidCredentialsError,
    NoChangesError,
    ValidationFailed,
    error_response,
    from_validation_error,
    register_error_handlers,
)
from .features import FeatureFlags, load_feature_flags
from .kb import register_kb_routes
from .models import Profile
from .rate_limit import RateLimiter, login_key
from .request_context import REQUEST_ID_HEADER, get_or_create_request_id, get_trusted_ip
from .schemas import (
    EmailChangeRequest,
    IbanGenerateQuery,
    LoginRequest,
    ProfileUpdateRequest,
    ResetChangeRequest,
    ResetRequest,
    SigninRequest,
    SignupRequest,
)
from .security import SessionAuth
from .sessions import SessionManager
from .templates import register_template_routes

logger = logging.getLogger("toolsmith.service")

ResetNotifier = Callable[[Profile, str], None]

_Model = TypeVar("_Model", bound=BaseModel)

RESET_REQUEST_MESSAGE = "Jeśli konto istnieje, wyślemy instrukcję na e-mail."
RESET_CHANGED_MESSAGE = "Hasło zaktualizowane."
SIGNUP_FAILED_MESSAGE = "Nie udało się utworzyć konta. Sprawdź dane."
RESET_FAILED_MESSAGE = "Nie udało się ustawić nowego hasła."
SIGNUP_SUCCESS_MESSAGE = "Konto utworzone i zalogowano pomyślnie."

SEEDED_CACHE_CONTROL = "public, max-age=31536000, immutable"
VALIDATOR_CACHE_CONTROL = "public, max-age=300"


def _log_reset_request(profile: Profile, token: str) -> None:
    logger.info("Password reset requested for %s", mask_email(profile.email))


async def _read_json(request: Request, *, require_content_type: bool = False) -> object:
    if require_content_type:
        content_type = request.headers.get("content-type", "")
        if "application/json" not in content_type.lower():
            raise ValidationFailed(
                "Content-Type musi być application/json",
                details={"body": "invalid_content_type"},
            )
    try:
        return await request.json()
    except ValueError as exc:
        raise ValidationFailed(
            "Nieprawidłowy format JSON",
            details={"body": "invalid_json"},
        ) from exc


def _validate(model: Type[_Model], payload: object) -> _Model:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise from_validation_error(exc) from exc


def _user_summary(profile: Profile) -> Dict[str, str]:
    return {"id": profile.id, "email": profile.email}


def register_api_routes(
    app: FastAPI,
    database: Database,
    *,
    settings: Settings,
    features: FeatureFlags,
    auth: SessionAuth,
    rate_limiter: RateLimiter,
    reset_tokens: SessionManager,
    reset_notifier: ResetNotifier,
) -> None:
    """Expose the core JSON API endpoints on the provided FastAPI application."""

    current_profile = auth.current_profile
    generators_enabled = features.require("collections.generators")
    password_reset_enabled = features.require("auth.passwordReset")

    @app.get("/api/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/env-check")
    async def env_check() -> Dict[str, bool]:
        return settings.env_check()

    @app.get("/api/features")
    async def feature_flags() -> Dict[str, object]:
        return {"env": settings.env_name, "features": features.as_dict()}

    async def _authenticate(request: Request, model: Type[LoginRequest] | Type[SigninRequest]):
        """Run the shared credential flow and return ``(profile, token, request_id)``.

        On failure the profile is ``None`` and the second item is the error response.
        """

        request_id = get_or_create_request_id(request)
        ip = get_trusted_ip(request, settings.trusted_proxies)
        user_agent = request.headers.get("user-agent")
        email: Optional[str] = None

        try:
            payload = await _read_json(request, require_content_type=True)
            credentials = _validate(model, payload)
            email = credentials.email
            rate_limiter.consume(login_key(ip))
            profile = database.authenticate_profile(credentials.email, credentials.password)
            if profile is None:
                raise InvalidCredentialsError()
        except AppError as exc:
            audit_login_attempt(
                database,
                status=STATUS_FAILURE,
                ip=ip,
                user_agent=user_agent,
                email=email,
                reason=exc.code,
            )
            logger.info("Login failed for %s: %s", mask_email(email), exc.code)
            return None, error_response(exc, headers={REQUEST_ID_HEADER: request_id}), request_id

        token = auth.sessions.create(profile.id)
        audit_login_attempt(
            database,
            status=STATUS_SUCCESS,
            ip=ip,
            user_agent=user_agent,
            email=email,
            user_id=profile.id,
        )
        logger.info("User %s signed in", profile.id)
        return profile, token, request_id

    @app.post("/api/auth/login")
    async def login(request: Request) -> Response:
        profile, outcome, request_id = await _authenticate(request, LoginRequest)
        if profile is None:
            return outcome
        return JSONResponse(
            {"access_token": outcome, "profile": profile.to_dict()},
            headers={REQUEST_ID_HEADER: request_id},
        )

    @app.post("/api/auth/signin")
    async def signin(request: Request) -> Response:
        profile, outcome, request_id = await _authenticate(request, SigninRequest)
        if profile is None:
            return outcome
        response = JSONResponse(
            {"user": _user_summary(profile)},
            headers={REQUEST_ID_HEADER: request_id},
        )
        auth.set_session_cookie(response, outcome)
        return response

    @app.post("/api/auth/signup")
    async def signup(request: Request) -> Response:
        payload = await _read_json(request)
        registration = _validate(SignupRequest, payload)

        ip = get_trusted_ip(request, settings.trusted_proxies)
        rate_limiter.consume(login_key(ip))

        try:
            profile = database.create_profile(registration.email, registration.password)
        except DuplicateRecordError as exc:
            logger.info("Signup rejected for %s", mask_email(registration.email))
            raise AppError(
                SIGNUP_FAILED_MESSAGE,
                code=INVALID_CREDENTIALS,
                status_code=400,
            ) from exc

        logger.info("Created profile %s", profile.id)
        token = auth.sessions.create(profile.id)
        response = JSONResponse(
            {
                "user": _user_summary(profile),
                "emailConfirmationRequired": False,
                "message": SIGNUP_SUCCESS_MESSAGE,
            }
        )
        auth.set_session_cookie(response, token)
        return response

    @app.post("/api/auth/signout")
    async def signout(request: Request) -> Response:
        token = await auth.token_from_request(request)
        if token is not None:
            auth.sessions.destroy(token)
        response = JSONResponse({"ok": True})
        auth.clear_session_cookie(response)
        return response

    @app.get("/api/auth/check")
    async def check(request: Request) -> Response:
        profile = await auth.optional_profile(request)
        if profile is None:
            return JSONResponse({"authenticated": False}, status_code=401)
        return JSONResponse(
            {"authenticated": True, "user": {**_user_summary(profile), "role": profile.role}}
        )

    @app.post("/api/auth/reset-request", dependencies=[Depends(password_reset_enabled)])
    async def reset_request(request: Request) -> Dict[str, object]:
        payload = await _read_json(request)
        reset = _validate(ResetRequest, payload)

        profile = database.get_profile_by_email(reset.email)
        if profile is not None:
            token = reset_tokens.create(profile.id)
            reset_notifier(profile, token)
        return {"ok": True, "message": RESET_REQUEST_MESSAGE}

    @app.post("/api/auth/reset-change", dependencies=[Depends(password_reset_enabled)])
    async def reset_change(request: Request) -> Dict[str, object]:
        payload = await _read_json(request)
        change = _validate(ResetChangeRequest, payload)

        user_id = reset_tokens.resolve(change.access_token)
        if user_id is None:
            raise AppError(RESET_FAILED_MESSAGE, code=INVALID_CREDENTIALS, status_code=400)

        database.set_password(user_id, change.new_password)
        reset_tokens.destroy(change.access_token)
        revoked = auth.sessions.destroy_user(user_id)
        logger.info("Password changed for user %s; revoked %s session(s)", user_id, revoked)
        return {"ok": True, "message": RESET_CHANGED_MESSAGE}

    @app.get("/api/profiles/me")
    async def get_own_profile(profile: Profile = Depends(current_profile)) -> Dict[str, object]:
        return profile.to_dict()

    @app.patch("/api/profiles/me")
    async def update_own_profile(
        update: ProfileUpdateRequest,
        profile: Profile = Depends(current_profile),
    ) -> Dict[str, object]:
        for field in ("role", "org_id"):
            if field in update.model_fields_set:
                raise ForbiddenFieldError(details={"field": field})

        if update.email is None:
            raise NoChangesError()
        email = _validate(EmailChangeRequest, {"email": update.email}).email
        if email == profile.email:
            raise NoChangesError()

        try:
            refreshed = database.update_profile_email(profile.id, email)
        except DuplicateRecordError as exc:
            raise EmailTakenError() from exc

        logger.info("User %s changed their email address", profile.id)
        return refreshed.to_dict()

    @app.get("/api/admin/profiles")
    async def list_profiles(admin: Profile = Depends(auth.admin_profile)) -> Dict[str, object]:
        return {"profiles": [item.to_dict() for item in database.list_profiles()]}

    @app.get("/api/generators/iban", dependencies=[Depends(generators_enabled)])
    async def generate_iban(
        country: Optional[str] = Query(default=None),
        seed: Optional[str] = Query(default=None),
    ) -> Response:
        query = _validate(IbanGenerateQuery, {"country": country, "seed": seed})

        payload: Dict[str, str] = {
            "iban": iban.generate(query.country, query.seed),
            "country": query.country,
        }
        headers = {"Cache-Control": "no-store"}
        if query.seed:
            payload["seed"] = query.seed
            etag = base64.b64encode(f"{query.country}:{query.seed}".encode("utf-8")).decode("ascii")
            headers = {"Cache-Control": SEEDED_CACHE_CONTROL, "ETag": f'"{etag}"'}
        return JSONResponse(payload, headers=headers)

    @app.get("/api/validators/iban", dependencies=[Depends(generators_enabled)])
    async def validate_iban(value: Optional[str] = Query(default=None, alias="iban")) -> Response:
        if not value or not value.strip():
            raise ValidationFailed(
                "Query parameter 'iban' is required",
                details={"iban": "Query parameter 'iban' is required"},
            )
        result = iban.validate(value)
        return JSONResponse(result.as_dict(), headers={"Cache-Control": VALIDATOR_CACHE_CONTROL})


def create_app(
    *,
    database: Database | None = None,
    settings: Settings | None = None,
    features: FeatureFlags | None = None,
    rate_limiter: RateLimiter | None = None,
    session_manager: SessionManager | None = None,
    reset_notifier: ResetNotifier | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for QA Toolsmith."""

    app_settings = settings or Settings.from_env()
    db = database or Database(app_settings.database_path)
    db.initialize()

    flags = features or load_feature_flags(app_settings.features_path, app_settings.env_name)
    limiter = rate_limiter or RateLimiter(
        max_requests=app_settings.rate_limit_max,
        window_seconds=app_settings.rate_limit_window,
    )
    sessions = session_manager or SessionManager(ttl=timedelta(hours=8))
    reset_tokens = SessionManager(ttl=timedelta(hours=1), sliding=False)

    if not app_settings.session_secure:
        logger.warning(
            "Session cookies are not marked as secure. Only disable secure cookies for"
            " local development."
        )
    auth = SessionAuth(db, sessions, secure_cookies=app_settings.session_secure)

    app = FastAPI(
        title="QA Toolsmith API",
        version="0.1.0",
        description="Tools for software testers: IBAN generator, knowledge base, charters and templates.",
    )
    app.state.database = db
    app.state.settings = app_settings
    app.state.features = flags
    app.state.rate_limiter = limiter
    app.state.session_manager = sessions
    app.state.reset_tokens = reset_tokens

    register_error_handlers(app)
    register_api_routes(
        app,
        db,
        settings=app_settings,
        features=flags,
        auth=auth,
        rate_limiter=limiter,
        reset_tokens=reset_tokens,
        reset_notifier=reset_notifier or _log_reset_request,
    )
    register_kb_routes(app, db, auth=auth, features=flags)
    register_charter_routes(app, db, auth=auth, features=flags)
    register_template_routes(app, db, auth=auth, features=flags)

    return app


__all__ = ["create_app", "register_api_routes"]
