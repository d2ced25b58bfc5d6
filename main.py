import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field

from data import COMPANIES, DataAccess
from database import DocumentStore, get_store
from errors import (
    AuthError,
    AuthErrorCode,
    DocumentNotFound,
    DuplicateTagError,
    NotSignedIn,
    ValidationFailure,
)
from identity import AuthClient, IdentityService
from refresh import RefreshSignal
from schemas import (
    AssetCreate,
    AssetUpdate,
    CompanyCreate,
    CompanyUpdate,
    EmployeeCreate,
    EmployeeUpdate,
    ProfileUpdate,
)
from session import SessionManager
from storage import UPLOAD_DIR, BlobStorage

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

TOKEN_TTL = timedelta(hours=int(os.getenv("TOKEN_TTL_HOURS", 12)))
MAX_REFRESH_WAIT = 60.0

AUTH_ERROR_STATUS = {
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.ACCOUNT_NOT_ACTIVE: 403,
    AuthErrorCode.RATE_LIMITED: 429,
    AuthErrorCode.EMAIL_IN_USE: 409,
    AuthErrorCode.WEAK_PASSWORD: 400,
    AuthErrorCode.UNKNOWN: 401,
}

# ----------------------------
# Sessions and Security Utilities
# ----------------------------
security = HTTPBearer(auto_error=False)


def create_token(request: Request, session: SessionManager) -> str:
    token = secrets.token_urlsafe(32)
    request.app.state.tokens[token] = {
        "session": session,
        "issued_at": datetime.now(timezone.utc),
        "expires_at": datetime.now(timezone.utc) + TOKEN_TTL,
    }
    return token


def drop_token(request: Request, token: str) -> None:
    payload = request.app.state.tokens.pop(token, None)
    if payload:
        payload["session"].close()


def get_data(request: Request) -> DataAccess:
    return request.app.state.data


def get_refresh(request: Request) -> RefreshSignal:
    return request.app.state.refresh


def new_session(request: Request) -> SessionManager:
    state = request.app.state
    return SessionManager(AuthClient(state.identity), state.data, state.storage)


def get_session(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> SessionManager:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = credentials.credentials
    payload = request.app.state.tokens.get(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload["expires_at"] < datetime.now(timezone.utc):
        drop_token(request, token)
        raise HTTPException(status_code=401, detail="Token expired")
    return payload["session"]


def require_active(session: SessionManager = Depends(get_session)) -> SessionManager:
    if not session.state.is_allowed:
        raise HTTPException(status_code=403, detail="Account not active")
    return session


def require_role(required: List[str]):
    def _checker(session: SessionManager = Depends(require_active)):
        if session.state.profile.role not in required:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return session
    return _checker


def auth_error(exc: AuthError) -> HTTPException:
    return HTTPException(
        status_code=AUTH_ERROR_STATUS[exc.code],
        detail={"code": exc.code.value, "message": exc.message},
    )


def session_view(session: SessionManager) -> Dict:
    state = session.state
    return {
        "status": state.status.value,
        "is_admin": state.is_admin,
        "profile": state.profile,
        "error": state.error.value if state.error else None,
    }


async def revalidate_sessions(request: Request, employee_id: str) -> None:
    for payload in list(request.app.state.tokens.values()):
        session = payload["session"]
        if session.state.identity and session.state.identity.uid == employee_id:
            await session.revalidate()


# ----------------------------
# Pydantic models (requests)
# ----------------------------
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str


class ProfileUpdateRequest(ProfileUpdate):
    avatar: Optional[str] = Field(None, description="Image as a base64 data URL")


class AssignRequest(BaseModel):
    employee_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class DecommissionRequest(BaseModel):
    notes: Optional[str] = None


router = APIRouter()


# ----------------------------
# Health/Test Endpoints
# ----------------------------
@router.get("/")
def root():
    return {"message": "Asset Tracker Backend Running"}


@router.get("/test")
async def test_database(request: Request):
    try:
        await request.app.state.store.list(COMPANIES)
        return {"backend": "ok", "database": "ok"}
    except Exception as e:
        return {"backend": "ok", "database": f"error: {str(e)}"}


# ----------------------------
# Auth Endpoints
# ----------------------------
@router.post("/auth/login")
async def login(payload: LoginRequest, request: Request):
    session = new_session(request)
    await session.start()
    try:
        profile = await session.login(payload.email, payload.password)
    except AuthError as exc:
        session.close()
        raise auth_error(exc)
    token = create_token(request, session)
    return {"token": token, "role": profile.role, "name": profile.name, "email": profile.email}


@router.post("/auth/signup", status_code=201)
async def signup(payload: SignupRequest, request: Request, refresh: RefreshSignal = Depends(get_refresh)):
    session = new_session(request)
    await session.start()
    try:
        profile = await session.signup(payload.name, payload.email, payload.password)
    except AuthError as exc:
        session.close()
        raise auth_error(exc)
    refresh.refresh()
    token = create_token(request, session)
    return {
        "message": "Your account is now pending activation by an administrator.",
        "token": token,
        "status": session.state.status.value,
        "profile": profile,
    }


@router.post("/auth/logout")
async def logout(request: Request, session: SessionManager = Depends(get_session),
                 credentials: HTTPAuthorizationCredentials = Depends(security)):
    await session.logout()
    drop_token(request, credentials.credentials)
    return {"message": "Logged out"}


@router.get("/auth/me")
def me(session: SessionManager = Depends(get_session)):
    return session_view(session)


@router.patch("/auth/me")
async def update_me(payload: ProfileUpdateRequest, session: SessionManager = Depends(require_active),
                    refresh: RefreshSignal = Depends(get_refresh)):
    changes = ProfileUpdate(**payload.model_dump(exclude_unset=True, exclude={"avatar"}))
    profile = await session.update_user(changes, payload.avatar)
    refresh.refresh()
    return {"message": "Profile updated", "profile": profile}


# ----------------------------
# Companies
# ----------------------------
@router.get("/companies")
async def list_companies(_=Depends(require_active), data: DataAccess = Depends(get_data)):
    return {"items": await data.get_companies()}


@router.post("/companies", status_code=201)
async def create_company(payload: CompanyCreate, _=Depends(require_role(["Admin"])),
                         data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    company = await data.add_company(payload)
    refresh.refresh()
    return {"message": "Company created", "company": company}


@router.patch("/companies/{company_id}")
async def update_company(company_id: str, payload: CompanyUpdate, _=Depends(require_role(["Admin"])),
                         data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    await data.update_company(company_id, payload)
    refresh.refresh()
    return {"message": "Company updated"}


@router.delete("/companies/{company_id}")
async def delete_company(company_id: str, _=Depends(require_role(["Admin"])),
                         data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    await data.delete_company(company_id)
    refresh.refresh()
    return {"message": "Company deleted"}


# ----------------------------
# Employees
# ----------------------------
@router.get("/employees")
async def list_employees(_=Depends(require_active), data: DataAccess = Depends(get_data)):
    return {"items": await data.get_employees()}


@router.get("/employees/{employee_id}")
async def get_employee(employee_id: str, _=Depends(require_active), data: DataAccess = Depends(get_data)):
    employee = await data.get_employee_by_id(employee_id)
    if not employee:
        raise HTTPException(status_code=404, detail="Employee not found")
    return {"employee": employee, "assets": await data.get_assets_for_employee(employee_id)}


@router.post("/employees", status_code=201)
async def create_employee(payload: EmployeeCreate, _=Depends(require_role(["Admin"])),
                          data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    employee = await data.create_employee(payload)
    refresh.refresh()
    return {"message": "Employee created", "employee": employee}


@router.patch("/employees/{employee_id}")
async def update_employee(employee_id: str, payload: EmployeeUpdate, request: Request,
                          _=Depends(require_role(["Admin"])),
                          data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    await data.update_employee(employee_id, payload)
    refresh.refresh()
    await revalidate_sessions(request, employee_id)
    return {"message": "Employee updated"}


@router.delete("/employees/{employee_id}")
async def delete_employee(employee_id: str, request: Request, _=Depends(require_role(["Admin"])),
                          data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    await data.delete_employee(employee_id)
    refresh.refresh()
    await revalidate_sessions(request, employee_id)
    return {"message": "Employee deleted"}


# ----------------------------
# Assets
# ----------------------------
@router.get("/assets")
async def list_assets(q: Optional[str] = None, status: Optional[str] = None,
                      _=Depends(require_active), data: DataAccess = Depends(get_data)):
    items = await data.get_assets()
    if status:
        items = [a for a in items if a.status == status]
    if q:
        needle = q.lower()
        items = [a for a in items if any(needle in (v or "").lower()
                                         for v in (a.serial_number, a.tag_no, a.brand, a.model))]
    return {"items": items}


@router.get("/assets/{asset_id}")
async def get_asset(asset_id: str, _=Depends(require_active), data: DataAccess = Depends(get_data)):
    asset = await data.get_asset_by_id(asset_id)
    if not asset:
        raise HTTPException(status_code=404, detail="Asset not found")
    return asset


@router.post("/assets", status_code=201)
async def create_asset(payload: AssetCreate, _=Depends(require_active),
                       data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    if not await data.get_company_by_id(payload.company_id):
        raise HTTPException(status_code=400, detail="Company not found")
    asset = await data.add_asset(payload)
    refresh.refresh()
    return {"message": "Asset created", "asset": asset}


@router.patch("/assets/{asset_id}")
async def update_asset(asset_id: str, payload: AssetUpdate, _=Depends(require_active),
                       data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    await data.update_asset(asset_id, payload)
    refresh.refresh()
    return {"message": "Asset updated", "asset": await data.get_asset_by_id(asset_id)}


@router.post("/assets/{asset_id}/assign")
async def assign_asset(asset_id: str, payload: AssignRequest, _=Depends(require_active),
                       data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    await data.assign_asset(asset_id, payload.employee_id, payload.notes)
    refresh.refresh()
    return {"message": "Asset assigned", "asset": await data.get_asset_by_id(asset_id)}


@router.post("/assets/{asset_id}/decommission")
async def decommission_asset(asset_id: str, payload: DecommissionRequest, _=Depends(require_active),
                             data: DataAccess = Depends(get_data), refresh: RefreshSignal = Depends(get_refresh)):
    await data.decommission_asset(asset_id, payload.notes)
    refresh.refresh()
    return {"message": "Asset decommissioned", "asset": await data.get_asset_by_id(asset_id)}


# ----------------------------
# Activity, dashboard and refresh
# ----------------------------
@router.get("/activity")
async def recent_activity(_=Depends(require_active), data: DataAccess = Depends(get_data)):
    return {"items": await data.get_recent_activity()}


@router.get("/dashboard")
async def dashboard(_=Depends(require_active), data: DataAccess = Depends(get_data)):
    return await data.get_dashboard_stats()


@router.get("/refresh")
async def data_version(since: int = -1, timeout: float = 0, _=Depends(require_active),
                       refresh: RefreshSignal = Depends(get_refresh)):
    """Long-poll for the next data version after ``since``."""
    version = await refresh.wait_for_change(since, min(max(timeout, 0), MAX_REFRESH_WAIT))
    return {"data_version": version}


# ----------------------------
# FastAPI App
# ----------------------------
def create_app(store: Optional[DocumentStore] = None, upload_dir: Optional[str] = None) -> FastAPI:
    app = FastAPI(title="Asset Tracker API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store if store is not None else get_store()
    app.state.data = DataAccess(app.state.store)
    app.state.refresh = RefreshSignal()
    app.state.identity = IdentityService(app.state.store)
    app.state.storage = BlobStorage(upload_dir or UPLOAD_DIR)
    app.state.tokens = {}

    # Static files for avatars
    app.mount("/uploads", StaticFiles(directory=app.state.storage.root), name="uploads")

    @app.exception_handler(ValidationFailure)
    async def validation_failure(request: Request, exc: ValidationFailure):
        status = 409 if isinstance(exc, DuplicateTagError) else 400
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.exception_handler(DocumentNotFound)
    async def not_found(request: Request, exc: DocumentNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(NotSignedIn)
    async def not_signed_in(request: Request, exc: NotSignedIn):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
