import pytest
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from lending.main import app, get_db
from lending.models import Base
from lending.crud import create_item, create_profile
from lending.notifications import ActivityFeedSink, NotificationEmitter
from lending.schemas import ItemCreate, ProfileCreate
from lending.storage import build_engine

PASSWORD = "testpassword"


@pytest.fixture(scope="function")
def engine(tmp_path):
    # a file database so that several threads see the same data
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_profile(db, username):
    return create_profile(
        db,
        ProfileCreate(
            email=f"{username}@example.com",
            username=username,
            display_name=username.title(),
            password=PASSWORD,
        ),
    )


@pytest.fixture(scope="function")
def profile_factory(db_session):
    def factory(username):
        return make_profile(db_session, username)

    return factory


@pytest.fixture(scope="function")
def owner(db_session):
    return make_profile(db_session, "olivia")


@pytest.fixture(scope="function")
def borrower(db_session):
    return make_profile(db_session, "bruno")


@pytest.fixture(scope="function")
def other_borrower(db_session):
    return make_profile(db_session, "bianca")


@pytest.fixture(scope="function")
def stranger(db_session):
    return make_profile(db_session, "sam")


@pytest.fixture(scope="function")
def test_item(db_session, owner):
    return create_item(
        db_session,
        ItemCreate(name="Denim Jacket", category="outerwear", image_url="jacket.png"),
        owner_id=owner.id,
    )


@pytest.fixture(scope="function")
def emitter(session_factory):
    return NotificationEmitter([ActivityFeedSink(session_factory)])


@pytest.fixture(scope="function")
def client(session_factory, emitter):
    app.state.testing = True
    app.state.notification_emitter = emitter

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False
    del app.state.notification_emitter


@pytest.fixture(scope="function")
def auth():
    def credentials(profile):
        return (profile.email, PASSWORD)

    return credentials
