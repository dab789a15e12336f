import logging
import os
import uuid
from datetime import date
from pathlib import Path

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware
from dotenv import load_dotenv

load_dotenv()

from campus_rentals.db.base import Base
from campus_rentals.db.deps import get_db
from campus_rentals.db.session import engine
from campus_rentals.models.market_models import User
from campus_rentals.schemas.accounts import LoginRequest, PasswordChange, ProfileUpdate, RegisterRequest, VerifyRequest
from campus_rentals.schemas.items import ItemCreate, ItemUpdate
from campus_rentals.schemas.messages import MessageCreate
from campus_rentals.schemas.rentals import CheckoutRequest, CreateRentalDto, RentalStatusUpdate, UnavailabilityBlockRequest
from campus_rentals.schemas.withdrawals import WithdrawalRequest
from campus_rentals.services.account_service import (
    authenticate,
    change_password,
    register_user,
    resend_verification_code,
    serialize_user,
    update_profile,
    verify_user,
)
from campus_rentals.services.availability_service import is_range_available, list_occupancy
from campus_rentals.services.catalog_service import (
    create_item,
    delete_item,
    get_item_for_actor,
    list_favorites,
    list_owner_items,
    list_visible_items,
    serialize_item,
    toggle_favorite,
    update_item,
)
from campus_rentals.services.errors import MarketplaceError, RateLimited
from campus_rentals.services.message_service import (
    accept_offer,
    list_conversations,
    list_messages,
    mark_conversation_read,
    reject_offer,
    send_message,
    serialize_message,
)
from campus_rentals.services.payment_service import handle_webhook, start_rental_checkout
from campus_rentals.services.rental_service import (
    create_unavailability_block,
    delete_rental,
    get_rental,
    list_rentals_for_user,
    request_rental,
    serialize_rental,
    transition_rental,
)
from campus_rentals.services.user_access_service import create_session, get_session, remove_session
from campus_rentals.services.withdrawal_service import (
    compute_balance,
    list_withdrawals,
    request_withdrawal,
    serialize_withdrawal,
)

BASE_DIR = Path(__file__).resolve().parent
UPLOADS_DIR = Path(os.environ.get("UPLOADS_DIR") or BASE_DIR / "static" / "uploads")
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}

logging.basicConfig(level=(os.environ.get("LOG_LEVEL") or "INFO").upper())
LOGGER = logging.getLogger("campus_rentals.api")
AUTH_LOGGER = logging.getLogger("campus_rentals.auth")

if str(os.environ.get("AUTO_CREATE_SCHEMA", "true")).strip().lower() in {"1", "true", "yes", "on"}:
    Base.metadata.create_all(bind=engine)

app = FastAPI(title="CampusRent")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5000,http://localhost:5000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="campus_rent_session",
    same_site="lax",
    https_only=False,
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    if exc.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    field = None
    if errors:
        location = [str(part) for part in errors[0].get("loc", ()) if part not in {"body", "query", "path"}]
        field = ".".join(location) or None
    return JSONResponse(status_code=400, content={"detail": "Invalid input.", "field": field})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    LOGGER.warning("Constraint violation on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=409, content={"detail": "Conflicting record already exists."})


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    LOGGER.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


def _session_token(request: Request, x_session_token: str | None) -> str | None:
    if x_session_token:
        return x_session_token
    token = request.session.get("token")
    return token if isinstance(token, str) else None


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
) -> User | None:
    session = get_session(_session_token(request, x_session_token))
    if not session:
        return None
    try:
        user_id = int(session.get("userID") or 0)
    except (TypeError, ValueError):
        return None
    if user_id <= 0:
        return None
    return db.get(User, user_id)


def require_user(user: User | None = Depends(get_current_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return user


def _start_session(request: Request, user: User) -> str:
    token = create_session({"userID": user.UserID})
    request.session["token"] = token
    return token


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail="db_unavailable") from exc


# Identity


@app.post("/api/register", status_code=201)
def register(request: Request, payload: RegisterRequest, db: Session = Depends(get_db)):
    user = register_user(db, payload.model_dump())
    token = _start_session(request, user)
    return {"user": serialize_user(user), "sessionToken": token}


@app.post("/api/login")
def login(request: Request, payload: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate(db, payload.username, payload.password)
    token = _start_session(request, user)
    AUTH_LOGGER.info("User %s logged in", user.UserID)
    return {"user": serialize_user(user), "sessionToken": token}


@app.post("/api/logout")
def logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    remove_session(_session_token(request, x_session_token))
    request.session.clear()
    return {"message": "Logged out"}


@app.get("/api/user")
def current_user(user: User | None = Depends(get_current_user)):
    return serialize_user(user) if user else None


@app.patch("/api/user")
def patch_user(payload: ProfileUpdate, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return serialize_user(update_profile(db, user, payload.model_dump(exclude_unset=True)))


@app.patch("/api/user/password")
def patch_password(payload: PasswordChange, user: User = Depends(require_user), db: Session = Depends(get_db)):
    change_password(db, user, payload.newPassword)
    return {"message": "Password updated"}


@app.post("/api/verify-account")
def verify_account(payload: VerifyRequest, user: User = Depends(require_user), db: Session = Depends(get_db)):
    if not verify_user(db, user, payload.code):
        raise HTTPException(status_code=400, detail="Invalid or expired verification code.")
    return {"verified": True, "user": serialize_user(user)}


@app.post("/api/resend-code")
def resend_code(user: User = Depends(require_user), db: Session = Depends(get_db)):
    sent = resend_verification_code(db, user)
    return {"message": "Verification code sent" if sent else "Verification code issued", "emailSent": sent}


# Catalog


@app.get("/api/items")
def get_items(
    search: str | None = Query(None),
    category: str | None = Query(None),
    user: User | None = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return [serialize_item(item) for item in list_visible_items(db, user, search=search, category=category)]


@app.get("/api/my-items")
def get_my_items(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return [serialize_item(item) for item in list_owner_items(db, user)]


@app.get("/api/items/{item_id}")
def get_item(item_id: int, user: User | None = Depends(get_current_user), db: Session = Depends(get_db)):
    return serialize_item(get_item_for_actor(db, user, item_id))


@app.post("/api/items", status_code=201)
def post_item(payload: ItemCreate, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return serialize_item(create_item(db, user, payload.model_dump()))


@app.patch("/api/items/{item_id}")
def patch_item(item_id: int, payload: ItemUpdate, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return serialize_item(update_item(db, user, item_id, payload.model_dump(exclude_unset=True)))


@app.delete("/api/items/{item_id}", status_code=204)
def remove_item(item_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    delete_item(db, user, item_id)
    return Response(status_code=204)


@app.get("/api/items/{item_id}/occupancy")
def get_item_occupancy(item_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    item = get_item_for_actor(db, user, item_id)
    return [occupied.to_dict() for occupied in list_occupancy(db, item.ItemID)]


@app.get("/api/items/{item_id}/availability")
def get_item_availability(
    item_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    item = get_item_for_actor(db, user, item_id)
    return {
        "itemId": item.ItemID,
        "startDate": start_date,
        "endDate": end_date,
        "available": is_range_available(db, item.ItemID, start_date, end_date),
    }


@app.post("/api/items/{item_id}/unavailable", status_code=201)
def post_unavailability_block(
    item_id: int,
    payload: UnavailabilityBlockRequest,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    block = create_unavailability_block(db, user, item_id, payload.startDate, payload.endDate)
    return serialize_rental(block)


@app.post("/api/upload")
def upload_image(file: UploadFile = File(...), user: User = Depends(require_user)):
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Unsupported file type. Please upload an image (jpg, png, webp, gif).")

    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    ext = os.path.splitext(file.filename or "")[1].lower()
    filename = f"{uuid.uuid4().hex}{ext}"
    target = UPLOADS_DIR / filename

    with target.open("wb") as output:
        output.write(file.file.read())

    LOGGER.info("User %s uploaded %s", user.UserID, filename)
    return {"url": f"/uploads/{filename}"}


# Favorites


@app.get("/api/favorites")
def get_favorites(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return [serialize_item(item) for item in list_favorites(db, user)]


@app.post("/api/favorites/{item_id}")
def post_favorite_toggle(item_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"isFavorite": toggle_favorite(db, user, item_id)}


# Rentals


@app.get("/api/rentals")
def get_rentals(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return list_rentals_for_user(db, user)


@app.post("/api/rentals", status_code=201)
def create_rental(payload: CreateRentalDto, user: User = Depends(require_user), db: Session = Depends(get_db)):
    rental = request_rental(db, user, payload.itemId, payload.startDate, payload.endDate)
    return serialize_rental(rental)


@app.patch("/api/rentals/{rental_id}/status")
def patch_rental_status(
    rental_id: int,
    payload: RentalStatusUpdate,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    rental = transition_rental(db, user, rental_id, payload.status)
    return serialize_rental(get_rental(db, rental.RentalID), include_renter=True)


@app.delete("/api/rentals/{rental_id}", status_code=204)
def remove_rental(rental_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    delete_rental(db, user, rental_id)
    return Response(status_code=204)


# Messages


@app.get("/api/messages")
def get_messages(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return [serialize_message(message) for message in list_messages(db, user)]


@app.post("/api/messages", status_code=201)
def post_message(payload: MessageCreate, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return serialize_message(send_message(db, user, payload.model_dump()))


@app.post("/api/messages/{message_id}/accept")
def post_accept_offer(message_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    message, rental = accept_offer(db, user, message_id)
    return {"message": serialize_message(message), "rental": serialize_rental(rental)}


@app.post("/api/messages/{message_id}/reject")
def post_reject_offer(message_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return serialize_message(reject_offer(db, user, message_id))


@app.get("/api/conversations")
def get_conversations(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return list_conversations(db, user)


@app.post("/api/conversations/{counterpart_id}/read")
def post_conversation_read(counterpart_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"updated": mark_conversation_read(db, user, counterpart_id)}


# Earnings


@app.get("/api/balance")
def get_balance(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return compute_balance(db, user.UserID)


@app.get("/api/withdrawals")
def get_withdrawals(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {
        "balance": compute_balance(db, user.UserID),
        "withdrawals": [serialize_withdrawal(withdrawal) for withdrawal in list_withdrawals(db, user)],
    }


@app.post("/api/withdrawals", status_code=201)
def post_withdrawal(payload: WithdrawalRequest, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return serialize_withdrawal(request_withdrawal(db, user, payload.model_dump()))


# Payments


@app.post("/api/create-checkout-session")
def post_checkout_session(payload: CheckoutRequest, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"url": start_rental_checkout(db, user, payload.rentalId)}


@app.post("/api/payments/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
):
    payload = await request.body()
    return await run_in_threadpool(handle_webhook, db, payload, stripe_signature)


UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=str(UPLOADS_DIR)), name="uploads")
