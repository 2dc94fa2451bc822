import logging
import os
from typing import Dict, List, Optional

from bson.errors import InvalidId
from bson.objectid import ObjectId
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from pymongo.errors import DuplicateKeyError

from database import db
from middleware import AuthMiddleware, SessionVerifier
from models import Models, register_models
from registry import ModelRegistry
from schemas import Product as ProductSchema, User as UserSchema

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_AUTH_JWT_KEY = "devsecret"
AUTH_JWT_KEY = os.getenv("AUTH_JWT_KEY", DEFAULT_AUTH_JWT_KEY)
AUTH_JWT_ALGORITHM = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
SIGN_IN_URL = os.getenv("SIGN_IN_URL", "/sign-in")
CATALOG_LIMIT = 100


# ----------------------- Utils -----------------------
def serialize_doc(doc):
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, dict):
        out = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = str(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(doc, ObjectId):
        return str(doc)
    if hasattr(doc, "isoformat"):
        return doc.isoformat()
    return doc


def get_models(request: Request) -> Models:
    models = request.app.state.models
    if models is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return models


def get_session(request: Request) -> dict:
    claims = getattr(request.state, "auth", None)
    if not claims:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return claims


def get_current_user(session: dict = Depends(get_session), models: Models = Depends(get_models)) -> dict:
    """The User for the session's email, created on first access."""
    if not session.get("email"):
        raise HTTPException(status_code=401, detail="Session has no email")
    try:
        # stored emails are normalized by EmailStr, so look up the same form
        email = UserSchema(email=session["email"]).email
    except ValidationError:
        raise HTTPException(status_code=401, detail="Session email is invalid")
    return models.User.get_or_create(
        {"email": email},
        {"name": session.get("name"), "imageUrl": session.get("image_url")},
    )


def require_seller(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("isSeller"):
        raise HTTPException(status_code=403, detail="Seller only")
    return user


# ----------------------- Bodies -----------------------
class CartUpdateBody(BaseModel):
    cartData: Dict[str, int]


class AddressBody(BaseModel):
    address: dict


class ProductCreateBody(BaseModel):
    name: str
    description: Optional[str] = None
    price: float
    offerPrice: float
    category: str
    image: List[str]


class OrderItemBody(BaseModel):
    product: str
    quantity: int


class OrderCreateBody(BaseModel):
    address: str
    items: List[OrderItemBody]


# ----------------------- App -----------------------
def create_app(database=db, verifier: Optional[SessionVerifier] = None, sign_in_url: str = SIGN_IN_URL) -> FastAPI:
    app = FastAPI(title="Storefront Backend")

    app.state.registry = ModelRegistry(database) if database is not None else None
    app.state.models = register_models(app.state.registry) if app.state.registry is not None else None

    @app.on_event("startup")
    def ensure_indexes():
        if app.state.registry is not None:
            app.state.registry.ensure_indexes()

    if verifier is None:
        if AUTH_JWT_KEY == DEFAULT_AUTH_JWT_KEY:
            logger.warning("AUTH_JWT_KEY not set, verifying sessions with the development key")
        verifier = SessionVerifier(AUTH_JWT_KEY, [AUTH_JWT_ALGORITHM])

    app.add_middleware(
        AuthMiddleware,
        verifier=verifier,
        sign_in_url=sign_in_url,
    )
    # outermost, so preflight requests and 401s carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        errors = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key(request: Request, exc: DuplicateKeyError):
        return JSONResponse(status_code=409, content={"detail": "Already exists"})

    @app.exception_handler(InvalidId)
    async def invalid_id(request: Request, exc: InvalidId):
        return JSONResponse(status_code=400, content={"detail": "Invalid id"})

    register_routes(app)
    return app


def register_routes(app: FastAPI):
    # ----------------------- Public -----------------------
    @app.get("/")
    def root():
        return {"message": "Storefront API running"}

    @app.get("/all-products")
    def list_products(category: Optional[str] = None, models: Models = Depends(get_models)):
        query = {"category": category} if category else {}
        return serialize_doc(models.Product.find(query, limit=CATALOG_LIMIT, sort=[("createdAt", -1)]))

    @app.get("/product/{product_id}")
    def get_product(product_id: str, models: Models = Depends(get_models)):
        product = models.Product.find_by_id(product_id)
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        return serialize_doc(product)

    # ----------------------- User -----------------------
    @app.get("/api/user/data")
    def user_data(user: dict = Depends(get_current_user)):
        return serialize_doc(user)

    @app.get("/api/cart/get")
    def get_cart(user: dict = Depends(get_current_user)):
        return {"cartItems": user.get("cartItems", {})}

    @app.post("/api/cart/update")
    def update_cart(body: CartUpdateBody, user: dict = Depends(get_current_user), models: Models = Depends(get_models)):
        if any(qty < 0 for qty in body.cartData.values()):
            raise HTTPException(status_code=400, detail="Quantities must not be negative")
        cart = {pid: qty for pid, qty in body.cartData.items() if qty > 0}
        models.User.update_by_id(user["_id"], {"cartItems": cart})
        return {"cartItems": cart}

    @app.post("/api/user/add-address")
    def add_address(body: AddressBody, session: dict = Depends(get_session), models: Models = Depends(get_models)):
        address = models.Address.create({**body.address, "userId": session["sub"]})
        return serialize_doc(address)

    @app.get("/api/user/get-address")
    def get_addresses(session: dict = Depends(get_session), models: Models = Depends(get_models)):
        return serialize_doc(models.Address.find({"userId": session["sub"]}))

    # ----------------------- Seller -----------------------
    @app.post("/api/product/add")
    def add_product(body: ProductCreateBody, session: dict = Depends(get_session), seller: dict = Depends(require_seller), models: Models = Depends(get_models)):
        product = models.Product.create(ProductSchema(userId=session["sub"], **body.model_dump()))
        return serialize_doc(product)

    @app.get("/api/product/seller-list")
    def seller_products(session: dict = Depends(get_session), seller: dict = Depends(require_seller), models: Models = Depends(get_models)):
        return serialize_doc(models.Product.find({"userId": session["sub"]}, sort=[("createdAt", -1)]))

    # ----------------------- Orders -----------------------
    @app.post("/api/order/create")
    def create_order(body: OrderCreateBody, session: dict = Depends(get_session), user: dict = Depends(get_current_user), models: Models = Depends(get_models)):
        if not body.items:
            raise HTTPException(status_code=400, detail="Order has no items")
        address = models.Address.find_by_id(body.address)
        if not address or address["userId"] != session["sub"]:
            raise HTTPException(status_code=404, detail="Address not found")

        amount = 0.0
        for item in body.items:
            if item.quantity <= 0:
                raise HTTPException(status_code=400, detail=f"Invalid quantity for {item.product}")
            product = models.Product.find_by_id(item.product)
            if not product:
                raise HTTPException(status_code=404, detail=f"Product not found: {item.product}")
            amount += product["offerPrice"] * item.quantity

        order = models.Order.create({
            "userId": session["sub"],
            "items": [item.model_dump() for item in body.items],
            "amount": round(amount, 2),
            "address": address["_id"],
        })
        models.User.update_by_id(user["_id"], {"cartItems": {}})
        logger.info("Order %s placed by %s", order["_id"], session["sub"])
        return serialize_doc(order)

    @app.get("/api/order/list")
    def list_orders(session: dict = Depends(get_session), models: Models = Depends(get_models)):
        orders = models.Order.find({"userId": session["sub"]}, sort=[("createdAt", -1)])
        return serialize_doc(models.Order.populate(orders, "address", "items.product"))

    @app.get("/api/order/seller-orders")
    def seller_orders(seller: dict = Depends(require_seller), models: Models = Depends(get_models)):
        orders = models.Order.find(sort=[("createdAt", -1)])
        return serialize_doc(models.Order.populate(orders, "address", "items.product"))


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
