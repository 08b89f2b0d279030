import os
import tempfile

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="chat-uploads-")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from chats import ChatManager
from database import build_engine, get_db, get_session_factory
from main import app
from message_store import MessageStore
from models import Base
from users import UserService

PASSWORD = "Secret123"


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    # Entered as a context manager so HTTP calls and open sockets share one event loop
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(username, password=PASSWORD):
        return UserService(db).register(username, password)
    return _make


@pytest.fixture
def post(db):
    store = MessageStore(db)

    def _post(chat, author, content):
        return store.append_message(chat.id, author.id, content)
    return _post


@pytest.fixture
def chats(db):
    return ChatManager(db)


@pytest.fixture
def login(client):
    """Register (if needed) and log in over HTTP; returns (user_id, headers)."""
    def _login(username, password=PASSWORD):
        client.post("/auth/register", json={"username": username, "password": password})
        token = client.post("/auth/login", json={"username": username, "password": password}).json()["token"]
        headers = {"Authorization": f"Bearer {token}"}
        user_id = client.get("/users/me/summary", headers=headers).json()["user_id"]
        return user_id, headers
    return _login
