from fastapi import FastAPI, APIRouter, Depends, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, List, Optional
import logging

import config
from bookings import BookingEngine
from database import UnitOfWork, get_gateway
from errors import BookingServiceError, Forbidden, PersistenceError, Unauthorized
from identity import IdentityStore
from inventory import InventoryStore
from otp import OTPRegistry
from schemas import (
    Booking, BookingCreate, BookingEnvelope, BookingUpdate, ForgotPasswordRequest, Identity, Laptop,
    LaptopCreate, LaptopEnvelope, LoginRequest, Message, OTPIssued, RegisterRequest, ResetPasswordRequest,
    Token, UserEnvelope, UserOut, UserUpdate,
)
from security import RateLimiter, create_access_token, decode_access_token

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

router = APIRouter(prefix="/api")

# Utils

async def get_current_identity(token: str = Depends(oauth2_scheme)) -> Identity:
    try:
        return decode_access_token(token)
    except Unauthorized:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if identity.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity


async def otp_rate_limit(request: Request) -> None:
    client = request.client.host if request.client else "unknown"
    if not request.app.state.otp_limiter.hit(client):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many requests, please try again after {config.OTP_RATE_LIMIT_WINDOW_MINUTES} minutes",
        )


def get_identity_store(request: Request) -> IdentityStore:
    return request.app.state.identity


def get_otp_registry(request: Request) -> OTPRegistry:
    return request.app.state.otp


def get_inventory(request: Request) -> InventoryStore:
    return request.app.state.inventory


def get_engine(request: Request) -> BookingEngine:
    return request.app.state.bookings

# Password recovery

@router.post("/auth/forgot-password", response_model=OTPIssued, dependencies=[Depends(otp_rate_limit)])
async def forgot_password(payload: ForgotPasswordRequest, otp: OTPRegistry = Depends(get_otp_registry)):
    code = otp.issue(payload.email)
    # no mail delivery, the code goes back to the caller
    return {"message": f"OTP sent to {payload.email}", "otp": code}


@router.post("/auth/reset-password", response_model=Message)
async def reset_password(payload: ResetPasswordRequest, otp: OTPRegistry = Depends(get_otp_registry)):
    await otp.reset_password(payload.email, payload.otp, payload.newPassword)
    return {"message": "Password reset successfully"}

# Auth endpoints

@router.post("/auth/register", response_model=UserEnvelope, status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterRequest, identity: IdentityStore = Depends(get_identity_store)):
    user = await identity.register(payload.name, payload.email, payload.password)
    return {"message": "User registered successfully", "user": user.redacted()}


@router.post("/auth/login", response_model=Token)
async def login(payload: LoginRequest, identity: IdentityStore = Depends(get_identity_store)):
    caller = identity.authenticate(payload.email, payload.password)
    return {"token": create_access_token(caller)}


@router.get("/auth/me", response_model=UserOut)
async def me(current: Identity = Depends(get_current_identity), identity: IdentityStore = Depends(get_identity_store)):
    return identity.get(current.id).redacted()


@router.post("/auth/promote", response_model=UserEnvelope)
async def promote(current: Identity = Depends(get_current_identity), identity: IdentityStore = Depends(get_identity_store)):
    if not config.ALLOW_SELF_PROMOTION:
        raise Forbidden("Self promotion is disabled")
    user = await identity.promote(current.id)
    return {"message": "User promoted to admin successfully", "user": user.redacted()}

# Admin: users

@router.get("/admin/users", response_model=List[UserOut], dependencies=[Depends(require_admin)])
async def list_users(identity: IdentityStore = Depends(get_identity_store)):
    return identity.list_redacted()


@router.delete("/admin/users/{user_id}", response_model=Message, dependencies=[Depends(require_admin)])
async def delete_user(user_id: int, identity: IdentityStore = Depends(get_identity_store)):
    await identity.admin_delete(user_id)
    return {"message": "User deleted successfully"}


@router.put("/admin/users/{user_id}", response_model=UserEnvelope, dependencies=[Depends(require_admin)])
async def update_user(user_id: int, payload: UserUpdate, identity: IdentityStore = Depends(get_identity_store)):
    user = await identity.admin_update(user_id, payload)
    return {"message": "User updated successfully", "user": user.redacted()}

# Laptops

@router.get("/laptops", response_model=List[Laptop], dependencies=[Depends(get_current_identity)])
async def list_laptops(inventory: InventoryStore = Depends(get_inventory)):
    return inventory.list()


@router.post("/laptops", response_model=LaptopEnvelope, status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_admin)])
async def add_laptop(payload: LaptopCreate, inventory: InventoryStore = Depends(get_inventory)):
    laptop = await inventory.add(payload)
    return {"message": "Laptop added successfully", "laptop": laptop}


@router.delete("/laptops/{laptop_id}", response_model=Message, dependencies=[Depends(require_admin)])
async def delete_laptop(laptop_id: int, inventory: InventoryStore = Depends(get_inventory)):
    await inventory.remove(laptop_id)
    return {"message": "Laptop deleted successfully"}

# Bookings

@router.post("/bookings", response_model=BookingEnvelope, status_code=status.HTTP_201_CREATED)
async def create_booking(payload: BookingCreate, current: Identity = Depends(get_current_identity), engine: BookingEngine = Depends(get_engine)):
    booking = await engine.create(current.id, payload.device_id, payload.start_date, payload.end_date)
    return {"message": "Booking confirmed", "booking": booking}


@router.get("/bookings", response_model=List[Booking])
async def my_bookings(current: Identity = Depends(get_current_identity), engine: BookingEngine = Depends(get_engine)):
    return engine.list_for_user(current.id)


@router.delete("/bookings/{booking_id}/cancel", response_model=BookingEnvelope)
async def cancel_booking(booking_id: int, current: Identity = Depends(get_current_identity), engine: BookingEngine = Depends(get_engine)):
    booking = await engine.cancel(current.id, booking_id)
    return {"message": "Booking cancelled successfully", "booking": booking}


@router.put("/bookings/{booking_id}/update", response_model=BookingEnvelope)
async def update_booking(booking_id: int, payload: BookingUpdate, current: Identity = Depends(get_current_identity), engine: BookingEngine = Depends(get_engine)):
    booking = await engine.update(current.id, booking_id, payload)
    return {"message": "Booking updated successfully", "booking": booking}

# Errors

async def service_error_handler(request: Request, exc: BookingServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error("Persistence failure during %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Something broke!"})


def create_app(gateway=None, clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    gateway = gateway or get_gateway()
    clock = clock or datetime.utcnow

    uow = UnitOfWork(gateway)
    identity = IdentityStore(uow, clock=clock)
    inventory = InventoryStore(uow)
    engine = BookingEngine(uow, inventory, cancellation_window=timedelta(hours=config.CANCELLATION_WINDOW_HOURS), clock=clock)
    otp = OTPRegistry(identity, ttl=timedelta(minutes=config.OTP_EXPIRE_MINUTES), max_attempts=config.OTP_MAX_ATTEMPTS, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # a broken data store must stop the server from starting
        await uow.load()
        fixed = await engine.reconcile()
        if fixed:
            logger.warning("Availability corrected for laptops %s", fixed)
        yield
        close = getattr(gateway, "close", None)
        if close:
            close()

    app = FastAPI(title="Laptop Booking API", lifespan=lifespan)
    app.state.uow = uow
    app.state.identity = identity
    app.state.inventory = inventory
    app.state.bookings = engine
    app.state.otp = otp
    app.state.otp_limiter = RateLimiter(config.OTP_RATE_LIMIT_MAX_REQUESTS, config.OTP_RATE_LIMIT_WINDOW_MINUTES * 60)

    # CORS
    origins = [
        config.FRONTEND_URL,
        "*",
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BookingServiceError, service_error_handler)
    app.add_exception_handler(PersistenceError, persistence_error_handler)
    app.include_router(router)

    @app.get("/")
    async def root():
        return {"message": "Laptop booking server is running"}

    @app.get("/test")
    async def test_storage():
        return {
            "ok": True,
            "storage": type(gateway).__name__,
            "collections": {name: len(repo) for name, repo in uow.repositories.items()},
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
