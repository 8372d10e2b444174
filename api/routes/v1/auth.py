"""
api/routes/v1/auth.py -- Registration, login and logout REST endpoints.

Routes:
  POST /auth/register  -- create an account; 200 {message}
  POST /auth/login     -- password login; sets the session cookie
  POST /auth/logout    -- revokes the session; always 200
  GET  /auth/me        -- current account info (requires a live session)

Every handler is a plain `def`: FastAPI runs it on the worker threadpool, so
the bcrypt work of one request never stalls the event loop or another
request's storage I/O. Handlers only translate between wire models and
AuthService; failures propagate as AuthError subclasses and are mapped to
status codes by the exception handlers in api/main.py.

Security:
  POST /login and POST /register are rate-limited per client IP.
  Login failures for unknown email and wrong password share one message.
  Cache-Control: no-store on login responses.
  The session token travels only in the HTTP-only cookie, never in a body.

Rate limits are applied via slowapi. The @limiter.limit() decorator sits
ABOVE @router.post so SlowAPIMiddleware finds the limit by endpoint name.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginRequest, LoginResponse, MessageResponse, RegisterRequest, UserInfo
from auth.dependencies import get_auth_service, get_current_account, get_session_token
from auth.models import Account
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /auth/register: public
# - POST /auth/login:    public -- login endpoint must be unauthenticated
# - POST /auth/logout:   public -- answers 200 whether or not the credential is still live
# - GET  /auth/me:       requires a live session (get_current_account)
router = APIRouter()


@limiter.limit(_settings.register_rate_limit)
@router.post("/auth/register", response_model=MessageResponse)
def register(request: Request, body: RegisterRequest) -> MessageResponse:
    """Create an account. 400 on blank/malformed fields or a taken username/email."""
    get_auth_service(request).register(body.username, body.email, body.phone_number, body.password)
    return MessageResponse(message="User registered successfully!")


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    AuthService.login() runs bcrypt even for unknown emails. Do NOT add an
    account lookup here -- that re-introduces the timing difference.
    """
    result = get_auth_service(request).login(body.email, body.password)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            message="Login successful!",
            user=UserInfo.from_account(result.account),
        ).model_dump(by_alias=True),
    )
    resp.set_cookie(
        _settings.session_cookie_name,
        value=result.token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.session_ttl_seconds,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the presented session and clear the cookie. Always 200."""
    get_auth_service(request).logout(get_session_token(request))
    resp = JSONResponse(content=MessageResponse(message="Logout successful!").model_dump())
    resp.delete_cookie(_settings.session_cookie_name)
    return resp


@router.get("/auth/me", response_model=UserInfo)
def me(current_account: Account = Depends(get_current_account)) -> JSONResponse:
    """Return identity information for the currently authenticated account."""
    return JSONResponse(content=UserInfo.from_account(current_account).model_dump(by_alias=True))
