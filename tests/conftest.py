import mongomock
import pytest
from fastapi.testclient import TestClient
from slugify import slugify

import users
from database import Database, to_object_id
from main import create_app
from schemas import RegisterRequest
from security import create_access_token
from settings import Settings


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append({"to": to, "subject": subject, "html": html})


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret", frontend_url="http://shop.test")


@pytest.fixture
def db():
    database = Database(mongomock.MongoClient(), "marketplace_test")
    database.ensure_indexes()
    return database


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def chat_model():
    return None


@pytest.fixture
def app(settings, db, mailer, chat_model):
    return create_app(settings=settings, database=db, mailer=mailer, chat_model=chat_model)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db, settings):
    """Register a user through the service and return (user document, auth headers)."""
    def _make(email, role="user", password="secret123", full_name="Test User"):
        users.register(db, RecordingMailer(), settings,
                       RegisterRequest(email=email, password=password, full_name=full_name))
        if role != "user":
            db["user"].update_one({"email": email}, {"$set": {"role": role}})
        user = db["user"].find_one({"email": email})
        token = create_access_token(user, settings.jwt_secret, 60)
        return user, {"Authorization": f"Bearer {token}"}
    return _make


@pytest.fixture
def shopper(make_user):
    return make_user("alice@multimart.io")


@pytest.fixture
def vendor(make_user):
    return make_user("vendor@multimart.io", role="vendor", full_name="Gadget Store")


@pytest.fixture
def admin(make_user):
    return make_user("admin@multimart.io", role="admin", full_name="Admin")


@pytest.fixture
def category_id(db):
    return db.create_document("category", {
        "name": "Electronics", "slug": "electronics", "description": None, "image": None,
        "parent_id": None, "order": 0, "status": "active",
    })


@pytest.fixture
def make_product(db, vendor, category_id):
    def _make(name, price, stock, status="active"):
        return db.create_document("product", {
            "name": name,
            "slug": slugify(name),
            "description": f"{name} description",
            "price": price,
            "compare_price": None,
            "category_id": category_id,
            "vendor_id": str(vendor[0]["_id"]),
            "stock": stock,
            "images": [f"{slugify(name)}.jpg"],
            "specifications": None,
            "status": status,
            "rejection_reason": None,
            "is_promoted": False,
            "average_rating": 0,
            "review_count": 0,
        })
    return _make


@pytest.fixture
def stock_of(db):
    def _stock(product_id):
        return db["product"].find_one({"_id": to_object_id(product_id)})["stock"]
    return _stock
