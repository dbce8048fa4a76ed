import mongomock
import pytest
from fastapi.testclient import TestClient
from jose import jwt

import main
from database import get_db


def _insert_user(db, name, role):
    email = f"{name.lower()}@demo.com"
    res = db["user"].insert_one({"name": name, "email": email, "role": role})
    return {"id": str(res.inserted_id), "name": name, "email": email, "role": role}


def token_for(user):
    return jwt.encode({"sub": user["id"], "role": user["role"]}, main.SECRET_KEY, algorithm=main.ALGORITHM)


@pytest.fixture
def db():
    return mongomock.MongoClient()["marketplace_test"]


@pytest.fixture
def users(db):
    return {
        "shopper": _insert_user(db, "Alice", "shopper"),
        "other_shopper": _insert_user(db, "Bob", "shopper"),
        "vendor": _insert_user(db, "Vera", "vendor"),
        "other_vendor": _insert_user(db, "Victor", "vendor"),
        "admin": _insert_user(db, "Admin", "admin"),
    }


@pytest.fixture
def store(db, users):
    res = db["store"].insert_one({
        "name": "Blue Cafe",
        "category": "Food",
        "location": "123 Main St",
        "owner": users["vendor"]["id"],
        "reviews": [],
        "rating": 0,
        "numReviews": 0,
    })
    return str(res.inserted_id)


@pytest.fixture
def products(db, store):
    ids = []
    for name, price in (("Espresso Beans", 10.0), ("Mug", 5.0)):
        res = db["product"].insert_one({
            "name": name,
            "price": price,
            "category": "Coffee",
            "store": store,
            "reviews": [],
            "rating": 0,
            "numReviews": 0,
        })
        ids.append(str(res.inserted_id))
    return ids


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def auth(users):
    def _headers(who):
        return {"Authorization": f"Bearer {token_for(users[who])}"}
    return _headers
