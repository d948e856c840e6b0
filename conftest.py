import os
import tempfile

# Point the app at a throwaway SQLite file before database.py is imported
_db_dir = tempfile.mkdtemp(prefix="library-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"

import pytest
from fastapi.testclient import TestClient

import auth_utils
import crud
from auth_schemas import StaffCreate
from database import Base, SessionLocal, engine
from models import StaffRole
from schemas import BookCreate, BorrowerCreate

# bcrypt's minimum cost keeps the suite fast
auth_utils.pwd_context.update(bcrypt__rounds=4)

STAFF_PASSWORD = "staffpass123"
STUDENT_PASSWORD = "studentpass123"


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db):
    import main

    return TestClient(main.app)


@pytest.fixture
def make_book(db):
    def _make(title="Clean Code", isbn=None, copies=1, author="Robert Martin", category="Software"):
        isbn = isbn or f"978-{abs(hash(title)) % 10**10:010d}"
        return crud.create_book(
            BookCreate(title=title, author=author, isbn=isbn, category=category, total_copies=copies), db
        )

    return _make


@pytest.fixture
def make_borrower(db):
    def _make(name="Alice Doe", external_id="S1001", email=None, type="student", department="Computer Science", password=None):
        email = email or f"{external_id.lower()}@college.edu"
        return crud.create_borrower(
            BorrowerCreate(
                name=name, external_id=external_id, email=email,
                department=department, type=type, password=password,
            ),
            db,
        )

    return _make


@pytest.fixture
def admin_user(db):
    return crud.create_staff_user(
        StaffCreate(username="root", password=STAFF_PASSWORD, full_name="Root Admin", role=StaffRole.ADMIN), db
    )


@pytest.fixture
def librarian_user(db):
    return crud.create_staff_user(
        StaffCreate(username="librarian", password=STAFF_PASSWORD, full_name="Libby", role=StaffRole.LIBRARIAN), db
    )


def _login(client, identifier, password, role=None):
    body = {"identifier": identifier, "password": password}
    if role:
        body["role"] = role
    resp = client.post("/auth/login", json=body)
    assert resp.status_code == 200, resp.text
    # tests pass the bearer header explicitly; drop the session cookie
    client.cookies.clear()
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def admin_headers(client, admin_user):
    return _login(client, "root", STAFF_PASSWORD)


@pytest.fixture
def librarian_headers(client, librarian_user):
    return _login(client, "librarian", STAFF_PASSWORD)


@pytest.fixture
def student(make_borrower):
    return make_borrower(name="Sam Student", external_id="S2001", password=STUDENT_PASSWORD)


@pytest.fixture
def student_headers(client, student):
    return _login(client, "S2001", STUDENT_PASSWORD)
