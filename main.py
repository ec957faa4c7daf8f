import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool

import config
import database
from accounts import AccountRepository, get_accounts
from auth import create_token, require_account, require_admin, require_chef
from database import create_document, ensure_indexes, get_db, get_documents, serialize_doc, to_object_id
from errors import ApiError, Conflict, Forbidden, NotFound, Unauthorized, ValidationFailed
from orders import OrderService, get_orders
from payments import PaymentBridge, get_payment_bridge, get_payment_provider
from schemas import Favorite, Meal, OrderStatus, Review, Role, User

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# App init
app = FastAPI(title="HomeDish Hub API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error rendering
@app.exception_handler(ApiError)
def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message, "error": exc.code})


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=ValidationFailed.status_code,
        content={
            "message": "Invalid request",
            "error": ValidationFailed.code,
            "errors": jsonable_encoder(exc.errors(), custom_encoder={Exception: str}),
        },
    )


@app.exception_handler(PyMongoError)
def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Database error", "error": "dependency_failure"})


# Utils
def page_params(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)) -> Dict[str, int]:
    return {"skip": (page - 1) * limit, "limit": limit, "page": page}


def get_meal(db, meal_id: str) -> dict:
    meal = db[database.MEALS].find_one({"_id": to_object_id(meal_id)})
    if not meal:
        raise NotFound("Meal not found")
    return meal


def refresh_meal_rating(db, food_id: str):
    pipeline = [
        {"$match": {"foodId": food_id}},
        {"$group": {"_id": "$foodId", "rating": {"$avg": "$rating"}}},
    ]
    result = list(db[database.REVIEWS].aggregate(pipeline))
    rating = round(result[0]["rating"], 1) if result else 0
    db[database.MEALS].update_one({"_id": to_object_id(food_id)}, {"$set": {"rating": rating}})


# Request models
class TokenRequest(BaseModel):
    uid: Optional[str] = None
    email: EmailStr


class RegisterRequest(BaseModel):
    uid: Optional[str] = None
    name: str
    email: EmailStr
    image: Optional[str] = None
    address: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    image: Optional[str] = None
    address: Optional[str] = None


class MealCreateRequest(BaseModel):
    name: str
    image: Optional[str] = None
    price: float = Field(..., gt=0)
    ingredients: List[str] = []
    estimatedDeliveryTime: Optional[str] = None
    chefExperience: Optional[str] = None


class MealUpdateRequest(BaseModel):
    name: Optional[str] = None
    image: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    ingredients: Optional[List[str]] = None
    estimatedDeliveryTime: Optional[str] = None
    chefExperience: Optional[str] = None


class ReviewCreateRequest(BaseModel):
    foodId: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


class ReviewUpdateRequest(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = None


class FavoriteCreateRequest(BaseModel):
    foodId: str


class OrderCreateRequest(BaseModel):
    foodId: str
    quantity: int = Field(..., ge=1)
    userEmail: EmailStr
    userAddress: Optional[str] = None
    # accepted for compatibility with older clients; the meal's listed price is used
    price: Optional[float] = None


class PaymentIntentRequest(BaseModel):
    orderId: str


class PaymentRecordRequest(BaseModel):
    orderId: str
    transactionId: str


class PaymentStatusRequest(BaseModel):
    paymentIntentId: str


# Routes
@app.get("/")
def root():
    return {"message": "HomeDish Hub server running"}


@app.on_event("startup")
def prepare_database():
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; database routes will fail")
        return
    ensure_indexes(database.db)


# Session
@app.post("/jwt")
def issue_token(req: TokenRequest, response: Response, accounts: AccountRepository = Depends(get_accounts)):
    account = accounts.find_by_email(req.email)
    if not account:
        raise NotFound("Account not found, register first")
    if account.get("uid") and req.uid != account["uid"]:
        logger.warning("Token request for %s with mismatched uid", account["email"])
        raise Unauthorized("Credentials do not match this account")
    token = create_token({"uid": account.get("uid"), "email": account["email"], "role": account.get("role")})
    response.set_cookie(
        config.TOKEN_COOKIE,
        token,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite=config.COOKIE_SAMESITE,
        max_age=config.TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
    )
    return {"success": True, "token": token}


@app.post("/logout")
def logout(response: Response):
    response.delete_cookie(
        config.TOKEN_COOKIE, httponly=True, secure=config.COOKIE_SECURE, samesite=config.COOKIE_SAMESITE
    )
    return {"success": True}


# Users
@app.post("/users", status_code=201)
def register_user(req: RegisterRequest, accounts: AccountRepository = Depends(get_accounts)):
    user = User(**req.model_dump())
    user_id = accounts.register(user)
    logger.info("Registered %s", user.email)
    return {"message": "User created", "insertedId": user_id}


@app.get("/users/profile")
def get_profile(account: dict = Depends(require_account)):
    return serialize_doc(account)


@app.patch("/users/profile")
def update_profile(
    req: ProfileUpdateRequest,
    account: dict = Depends(require_account),
    accounts: AccountRepository = Depends(get_accounts),
):
    updates = req.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise ValidationFailed("No updates provided")
    return serialize_doc(accounts.update_profile(account["email"], updates))


@app.get("/users/role")
def get_role(account: dict = Depends(require_account)):
    return {"role": account.get("role"), "status": account.get("status"), "chefId": account.get("chefId")}


@app.post("/users/request-chef")
def request_chef(account: dict = Depends(require_account), accounts: AccountRepository = Depends(get_accounts)):
    updated = accounts.request_chef(account["email"])
    return {"message": "Chef request submitted", "role": updated["role"]}


@app.post("/users/request-admin")
def request_admin(account: dict = Depends(require_account), accounts: AccountRepository = Depends(get_accounts)):
    updated = accounts.request_admin(account["email"])
    return {"message": "Admin request submitted", "role": updated["role"]}


# Admin
@app.get("/admin/users")
def admin_list_users(
    role: Optional[Role] = None,
    paging: Dict[str, int] = Depends(page_params),
    admin=Depends(require_admin),
    accounts: AccountRepository = Depends(get_accounts),
):
    users, total = accounts.list_accounts(role.value if role else None, paging["skip"], paging["limit"])
    return {"users": [serialize_doc(u) for u in users], "total": total, "page": paging["page"]}


@app.get("/admin/requests")
def admin_pending_requests(admin=Depends(require_admin), accounts: AccountRepository = Depends(get_accounts)):
    return [serialize_doc(u) for u in accounts.pending_requests()]


@app.patch("/admin/users/{email}/approve-chef")
def approve_chef(email: str, admin=Depends(require_admin), accounts: AccountRepository = Depends(get_accounts)):
    updated = accounts.approve_chef(email)
    return {"message": "Chef request approved", "role": updated["role"], "chefId": updated["chefId"]}


@app.patch("/admin/users/{email}/reject-chef")
def reject_chef(email: str, admin=Depends(require_admin), accounts: AccountRepository = Depends(get_accounts)):
    updated = accounts.reject_chef(email)
    return {"message": "Chef request rejected", "role": updated["role"]}


@app.patch("/admin/users/{email}/approve-admin")
def approve_admin(email: str, admin=Depends(require_admin), accounts: AccountRepository = Depends(get_accounts)):
    updated = accounts.approve_admin(email)
    return {"message": "Admin request approved", "role": updated["role"]}


@app.patch("/admin/users/{email}/reject-admin")
def reject_admin(email: str, admin=Depends(require_admin), accounts: AccountRepository = Depends(get_accounts)):
    updated = accounts.reject_admin(email)
    return {"message": "Admin request rejected", "role": updated["role"]}


@app.patch("/admin/users/{email}/fraud")
def flag_fraud(email: str, admin=Depends(require_admin), accounts: AccountRepository = Depends(get_accounts)):
    updated = accounts.flag_fraud(email)
    return {"message": "Account flagged as fraud", "status": updated["status"]}


@app.get("/admin/stats")
def admin_stats(admin=Depends(require_admin), db=Depends(get_db), orders: OrderService = Depends(get_orders)):
    paid = list(db[database.PAYMENTS].aggregate([{"$group": {"_id": None, "amount": {"$sum": "$amount"}}}]))
    return {
        "users": db[database.USERS].count_documents({}),
        "chefs": db[database.USERS].count_documents({"role": Role.CHEF.value}),
        "meals": db[database.MEALS].count_documents({}),
        "orders": db[database.ORDERS].count_documents({}),
        "ordersByStatus": orders.counts_by_status(),
        "totalPaid": (paid[0]["amount"] / 100) if paid else 0,
    }


# Meals
@app.get("/meals")
def list_meals(
    search: Optional[str] = None,
    sort: Optional[Literal["asc", "desc"]] = None,
    paging: Dict[str, int] = Depends(page_params),
    db=Depends(get_db),
):
    query: Dict[str, Any] = {}
    if search:
        query["name"] = {"$regex": search, "$options": "i"}
    cursor = db[database.MEALS].find(query)
    if sort:
        cursor = cursor.sort("price", 1 if sort == "asc" else -1)
    else:
        cursor = cursor.sort("created_at", DESCENDING)
    meals = list(cursor.skip(paging["skip"]).limit(paging["limit"]))
    total = db[database.MEALS].count_documents(query)
    return {"meals": [serialize_doc(m) for m in meals], "total": total, "page": paging["page"]}


@app.get("/meals/{meal_id}")
def get_meal_detail(meal_id: str, db=Depends(get_db)):
    return serialize_doc(get_meal(db, meal_id))


@app.post("/meals", status_code=201)
def create_meal(req: MealCreateRequest, chef: dict = Depends(require_chef), db=Depends(get_db)):
    meal = Meal(**req.model_dump(), chefId=chef["chefId"], chefName=chef.get("name"), chefEmail=chef["email"])
    meal_id = create_document(database.MEALS, meal, database=db)
    logger.info("Meal %s created by %s", meal_id, chef["chefId"])
    return {"message": "Meal created", "insertedId": meal_id}


@app.patch("/meals/{meal_id}")
def update_meal(meal_id: str, req: MealUpdateRequest, chef: dict = Depends(require_chef), db=Depends(get_db)):
    updates = req.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise ValidationFailed("No updates provided")
    meal = get_meal(db, meal_id)
    if meal.get("chefId") != chef["chefId"]:
        raise Forbidden("Not your meal")
    updates["updated_at"] = datetime.now(timezone.utc)
    db[database.MEALS].update_one({"_id": meal["_id"], "chefId": chef["chefId"]}, {"$set": updates})
    return serialize_doc(get_meal(db, meal_id))


@app.delete("/meals/{meal_id}")
def delete_meal(meal_id: str, chef: dict = Depends(require_chef), db=Depends(get_db)):
    meal = get_meal(db, meal_id)
    if meal.get("chefId") != chef["chefId"]:
        raise Forbidden("Not your meal")
    result = db[database.MEALS].delete_one({"_id": meal["_id"], "chefId": chef["chefId"]})
    return {"deletedCount": result.deleted_count}


@app.get("/chef/meals")
def my_meals(chef: dict = Depends(require_chef), db=Depends(get_db)):
    meals = get_documents(database.MEALS, {"chefId": chef["chefId"]}, database=db)
    return [serialize_doc(m) for m in meals]


# Reviews
@app.get("/reviews")
def list_reviews(foodId: str, paging: Dict[str, int] = Depends(page_params), db=Depends(get_db)):
    reviews = (
        db[database.REVIEWS].find({"foodId": foodId}).sort("date", DESCENDING).skip(paging["skip"]).limit(paging["limit"])
    )
    return [serialize_doc(r) for r in reviews]


@app.get("/reviews/mine")
def my_reviews(account: dict = Depends(require_account), db=Depends(get_db)):
    pipeline = [
        {"$match": {"reviewerEmail": account["email"]}},
        {"$addFields": {"mealObjectId": {"$toObjectId": "$foodId"}}},
        {"$lookup": {"from": database.MEALS, "localField": "mealObjectId", "foreignField": "_id", "as": "meal"}},
        {"$unwind": {"path": "$meal", "preserveNullAndEmptyArrays": True}},
        {"$addFields": {"mealName": "$meal.name"}},
        {"$project": {"meal": 0, "mealObjectId": 0}},
        {"$sort": {"date": -1}},
    ]
    return [serialize_doc(r) for r in db[database.REVIEWS].aggregate(pipeline)]


@app.post("/reviews", status_code=201)
def create_review(req: ReviewCreateRequest, account: dict = Depends(require_account), db=Depends(get_db)):
    meal = get_meal(db, req.foodId)
    review = Review(
        foodId=str(meal["_id"]),
        rating=req.rating,
        comment=req.comment,
        reviewerName=account.get("name"),
        reviewerImage=account.get("image"),
        reviewerEmail=account["email"],
        date=datetime.now(timezone.utc),
    )
    review_id = create_document(database.REVIEWS, review, database=db)
    refresh_meal_rating(db, review.foodId)
    return {"message": "Review added", "insertedId": review_id}


def own_review(db, review_id: str, email: str) -> dict:
    review = db[database.REVIEWS].find_one({"_id": to_object_id(review_id)})
    if not review:
        raise NotFound("Review not found")
    if review.get("reviewerEmail") != email:
        raise Forbidden("Not your review")
    return review


@app.patch("/reviews/{review_id}")
def update_review(review_id: str, req: ReviewUpdateRequest, account: dict = Depends(require_account), db=Depends(get_db)):
    review = own_review(db, review_id, account["email"])
    updates = req.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise ValidationFailed("No updates provided")
    updates["date"] = datetime.now(timezone.utc)
    db[database.REVIEWS].update_one({"_id": review["_id"]}, {"$set": updates})
    refresh_meal_rating(db, review["foodId"])
    return serialize_doc(db[database.REVIEWS].find_one({"_id": review["_id"]}))


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, account: dict = Depends(require_account), db=Depends(get_db)):
    review = own_review(db, review_id, account["email"])
    result = db[database.REVIEWS].delete_one({"_id": review["_id"]})
    refresh_meal_rating(db, review["foodId"])
    return {"deletedCount": result.deleted_count}


# Favorites
@app.get("/favorites")
def my_favorites(account: dict = Depends(require_account), db=Depends(get_db)):
    favorites = db[database.FAVORITES].find({"userEmail": account["email"]}).sort("addedTime", DESCENDING)
    return [serialize_doc(f) for f in favorites]


@app.post("/favorites", status_code=201)
def add_favorite(req: FavoriteCreateRequest, account: dict = Depends(require_account), db=Depends(get_db)):
    meal = get_meal(db, req.foodId)
    food_id = str(meal["_id"])
    if db[database.FAVORITES].find_one({"userEmail": account["email"], "foodId": food_id}):
        raise Conflict("Meal is already in favorites")
    favorite = Favorite(
        userEmail=account["email"],
        foodId=food_id,
        mealName=meal["name"],
        chefId=meal["chefId"],
        chefName=meal.get("chefName"),
        price=meal["price"],
        addedTime=datetime.now(timezone.utc),
    )
    try:
        favorite_id = create_document(database.FAVORITES, favorite, database=db)
    except DuplicateKeyError:
        raise Conflict("Meal is already in favorites")
    return {"message": "Added to favorites", "insertedId": favorite_id}


@app.delete("/favorites/{favorite_id}")
def remove_favorite(favorite_id: str, account: dict = Depends(require_account), db=Depends(get_db)):
    favorite = db[database.FAVORITES].find_one({"_id": to_object_id(favorite_id)})
    if not favorite:
        raise NotFound("Favorite not found")
    if favorite.get("userEmail") != account["email"]:
        raise Forbidden("Not your favorite")
    result = db[database.FAVORITES].delete_one({"_id": favorite["_id"], "userEmail": account["email"]})
    return {"deletedCount": result.deleted_count}


# Orders
@app.post("/orders", status_code=201)
def create_order(req: OrderCreateRequest, account: dict = Depends(require_account), orders: OrderService = Depends(get_orders)):
    order = orders.create(account, req.model_dump())
    return serialize_doc(order)


@app.get("/orders/mine")
def my_orders(
    paging: Dict[str, int] = Depends(page_params),
    account: dict = Depends(require_account),
    orders: OrderService = Depends(get_orders),
):
    return [serialize_doc(o) for o in orders.for_customer(account["email"], paging["skip"], paging["limit"])]


@app.get("/chef/orders")
def chef_orders(
    status: Optional[OrderStatus] = None,
    paging: Dict[str, int] = Depends(page_params),
    chef: dict = Depends(require_chef),
    orders: OrderService = Depends(get_orders),
):
    found = orders.for_chef(chef["chefId"], status.value if status else None, paging["skip"], paging["limit"])
    return [serialize_doc(o) for o in found]


@app.get("/orders/{order_id}")
def get_order(order_id: str, account: dict = Depends(require_account), orders: OrderService = Depends(get_orders)):
    order = orders.get(order_id)
    if account["email"] not in (order.get("userEmail"), order.get("chefEmail")):
        raise Forbidden("Not your order")
    return serialize_doc(order)


@app.patch("/orders/{order_id}/accept")
def accept_order(order_id: str, chef: dict = Depends(require_chef), orders: OrderService = Depends(get_orders)):
    return serialize_doc(orders.accept(order_id, chef["chefId"]))


@app.patch("/orders/{order_id}/cancel")
def cancel_order(order_id: str, chef: dict = Depends(require_chef), orders: OrderService = Depends(get_orders)):
    return serialize_doc(orders.cancel(order_id, chef["chefId"]))


@app.patch("/orders/{order_id}/deliver")
def deliver_order(order_id: str, chef: dict = Depends(require_chef), orders: OrderService = Depends(get_orders)):
    return serialize_doc(orders.deliver(order_id, chef["email"]))


@app.patch("/orders/{order_id}/payment-status")
def update_payment_status(
    order_id: str,
    req: PaymentStatusRequest,
    account: dict = Depends(require_account),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    order = bridge.confirm(order_id, account["email"], req.paymentIntentId)
    return serialize_doc(order)


# Payments
@app.post("/create-payment-intent")
def create_payment_intent(
    req: PaymentIntentRequest,
    account: dict = Depends(require_account),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    return bridge.create_intent(req.orderId, account["email"])


@app.post("/payments", status_code=201)
def record_payment(
    req: PaymentRecordRequest,
    account: dict = Depends(require_account),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    order = bridge.confirm(req.orderId, account["email"], req.transactionId)
    return {"message": "Payment recorded", "orderId": req.orderId, "paymentStatus": order["paymentStatus"]}


@app.get("/payments/mine")
def my_payments(account: dict = Depends(require_account), bridge: PaymentBridge = Depends(get_payment_bridge)):
    return [serialize_doc(p) for p in bridge.history(account["email"])]


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    provider=Depends(get_payment_provider),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    payload = await request.body()
    event = provider.parse_event(payload, request.headers.get("Stripe-Signature"))
    updated = await run_in_threadpool(bridge.handle_event, event)
    return {"received": True, "updated": updated}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
