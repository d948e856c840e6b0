from datetime import datetime, timedelta

import assignments
import clock
import notifications
from models import Book

NOW = datetime(2025, 3, 1, 9, 0, 0)


def _future(days):
    return (clock.utcnow() + timedelta(days=days)).isoformat()


def test_catalog_reads_are_public(client, make_book):
    make_book(title="Dune", isbn="1", copies=2)
    resp = client.get("/books/")
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 1
    assert body["items"][0]["available_copies"] == 2

    book_id = body["items"][0]["id"]
    assert client.get(f"/books/{book_id}").json()["title"] == "Dune"
    assert client.get("/books/999").status_code == 404


def test_librarian_manages_books(client, librarian_headers):
    sample = {
        "title": "Clean Architecture",
        "author": "Robert Martin",
        "isbn": "9780134494166",
        "category": "Software",
        "total_copies": 3,
    }
    resp = client.post("/books/", json=sample, headers=librarian_headers)
    assert resp.status_code == 201, resp.text
    book = resp.json()
    assert book["available_copies"] == 3

    assert client.post("/books/", json=sample, headers=librarian_headers).status_code == 409

    resp = client.put(f"/books/{book['id']}", json={"total_copies": 5}, headers=librarian_headers)
    assert resp.json()["available_copies"] == 5

    bad = dict(sample, isbn="x", total_copies=-1)
    assert client.post("/books/", json=bad, headers=librarian_headers).status_code == 422

    assert client.delete(f"/books/{book['id']}", headers=librarian_headers).status_code == 200
    assert client.get(f"/books/{book['id']}").status_code == 404


def test_librarian_manages_borrowers(client, librarian_headers):
    payload = {
        "name": "Ada Lovelace",
        "external_id": "F100",
        "email": "ada@college.edu",
        "department": "Mathematics",
        "type": "faculty",
    }
    resp = client.post("/borrowers/", json=payload, headers=librarian_headers)
    assert resp.status_code == 201, resp.text
    borrower = resp.json()
    assert borrower["borrowed_books"] == 0
    assert "password" not in borrower and "hashed_password" not in borrower

    assert client.post("/borrowers/", json=payload, headers=librarian_headers).status_code == 409
    assert client.post("/borrowers/", json=dict(payload, email="nope"), headers=librarian_headers).status_code == 422

    resp = client.get("/borrowers/", params={"type": "faculty"}, headers=librarian_headers)
    assert [b["external_id"] for b in resp.json()["items"]] == ["F100"]

    resp = client.put(f"/borrowers/{borrower['id']}", json={"phone": "555-0100"}, headers=librarian_headers)
    assert resp.json()["phone"] == "555-0100"

    detail = client.get(f"/borrowers/{borrower['id']}", headers=librarian_headers).json()
    assert detail["borrowing_history"] == []

    assert client.delete(f"/borrowers/{borrower['id']}", headers=librarian_headers).status_code == 200
    assert client.get(f"/borrowers/{borrower['id']}", headers=librarian_headers).status_code == 404


def test_borrow_return_pay_flow(client, db, librarian_headers, make_book, make_borrower, monkeypatch):
    sent = []
    monkeypatch.setattr(notifications, "send_email", lambda to, subject, body: sent.append((to, subject)) or True)
    monkeypatch.setattr(notifications, "is_configured", lambda: True)

    book = make_book(title="Dune", copies=1)
    alice = make_borrower(name="Alice", external_id="S1")
    bob = make_borrower(name="Bob", external_id="S2")

    resp = client.post(
        "/assignments/",
        json={"book_id": book.id, "borrower_id": alice.id, "due_at": _future(7)},
        headers=librarian_headers,
    )
    assert resp.status_code == 201, resp.text
    a = resp.json()
    assert a["status"] == "borrowed"
    assert a["book_title"] == "Dune"
    assert a["borrower_name"] == "Alice"
    assert sent and sent[0][0] == "s1@college.edu"

    resp = client.post("/assignments/", json={"book_id": book.id, "borrower_id": bob.id}, headers=librarian_headers)
    assert resp.status_code == 400
    assert "not available" in resp.json()["detail"]

    resp = client.post("/assignments/", json={"book_id": book.id, "borrower_id": alice.id}, headers=librarian_headers)
    assert resp.status_code == 409

    resp = client.post(
        "/assignments/",
        json={"book_id": book.id, "borrower_id": bob.id, "due_at": _future(-1)},
        headers=librarian_headers,
    )
    assert resp.status_code == 400

    resp = client.put(f"/assignments/{a['id']}/return", headers=librarian_headers)
    assert resp.status_code == 200
    returned = resp.json()
    assert returned["status"] == "returned"
    assert returned["fine_amount"] == 0
    assert client.put(f"/assignments/{a['id']}/return", headers=librarian_headers).status_code == 409

    db.expire_all()
    assert db.query(Book).filter(Book.id == book.id).one().available_copies == 1

    # no fine on an on-time return
    assert client.put(f"/assignments/{a['id']}/pay-fine", headers=librarian_headers).status_code == 400
    assert client.put("/assignments/999/return", headers=librarian_headers).status_code == 404


def test_late_return_fine_is_paid_by_its_borrower(client, db, librarian_headers, student, student_headers, make_book, make_borrower):
    book = make_book(title="Emma", copies=2)
    other = make_borrower(name="Other", external_id="S3")
    # backdated directly through the ledger so the fine is already due
    mine = assignments.record_borrow(db, book.id, student.id, NOW + timedelta(days=7), now=NOW)
    theirs = assignments.record_borrow(db, book.id, other.id, NOW + timedelta(days=7), now=NOW)
    assignments.return_book(db, mine.id, now=NOW + timedelta(days=10))
    assignments.return_book(db, theirs.id, now=NOW + timedelta(days=10))

    assert client.put(f"/assignments/{theirs.id}/pay-fine", headers=student_headers).status_code == 403

    resp = client.put(f"/assignments/{mine.id}/pay-fine", headers=student_headers)
    assert resp.status_code == 200, resp.text
    assert resp.json()["fine_amount"] == 1.50
    assert resp.json()["fine_paid"] is True
    assert client.put(f"/assignments/{mine.id}/pay-fine", headers=student_headers).status_code == 409

    # staff may settle any borrower's fine
    assert client.put(f"/assignments/{theirs.id}/pay-fine", headers=librarian_headers).status_code == 200


def test_assignment_listing_and_overdue(client, db, librarian_headers, make_book, make_borrower):
    alice = make_borrower(name="Alice", external_id="S1")
    bob = make_borrower(name="Bob", external_id="S2")
    late = assignments.record_borrow(db, make_book(title="A", isbn="1").id, alice.id, NOW + timedelta(days=1), now=NOW)
    fresh = client.post(
        "/assignments/",
        json={"book_id": make_book(title="B", isbn="2").id, "borrower_id": bob.id},
        headers=librarian_headers,
    ).json()

    resp = client.get("/assignments/", params={"status": "overdue"}, headers=librarian_headers)
    assert [x["id"] for x in resp.json()["items"]] == [late.id]
    assert resp.json()["items"][0]["status"] == "overdue"

    resp = client.get("/assignments/", params={"status": "borrowed"}, headers=librarian_headers)
    assert [x["id"] for x in resp.json()["items"]] == [fresh["id"]]

    resp = client.get("/assignments/", params={"borrower_name": "ali"}, headers=librarian_headers)
    assert resp.json()["total"] == 1

    resp = client.get("/assignments/", params={"limit": 1}, headers=librarian_headers)
    assert resp.json()["total_pages"] == 2
    assert [x["id"] for x in resp.json()["items"]] == [fresh["id"]]

    assert client.get(f"/assignments/{late.id}", headers=librarian_headers).json()["status"] == "overdue"
    assert client.get("/assignments/999", headers=librarian_headers).status_code == 404

    stats = client.get("/admin/stats", headers=librarian_headers).json()
    assert stats["borrowed_books"] == 2
    assert stats["overdue_books"] == 1
    assert stats["overdue_alerts"][0]["id"] == late.id


def test_student_self_service(client, db, student, student_headers, make_book, make_borrower):
    other = make_borrower(name="Other", external_id="S3")
    book = make_book(copies=3)
    assignments.record_borrow(db, book.id, student.id, NOW + timedelta(days=1), now=NOW)
    assignments.record_borrow(db, book.id, other.id, NOW + timedelta(days=1), now=NOW)

    mine = client.get("/me/assignments", headers=student_headers).json()
    assert mine["total"] == 1
    assert mine["items"][0]["borrower_id"] == student.id

    summary = client.get("/me/summary", headers=student_headers).json()
    assert summary["borrower"]["external_id"] == "S2001"
    assert summary["currently_borrowed"] == 1
    assert summary["overdue"] == 1


def test_admin_manages_librarians(client, admin_user, admin_headers, db):
    resp = client.post(
        "/admin/librarians/",
        json={"username": "newlib", "password": "longenough", "full_name": "New Librarian"},
        headers=admin_headers,
    )
    assert resp.status_code == 201, resp.text
    new_id = resp.json()["id"]
    assert resp.json()["role"] == "librarian"

    dup = client.post("/admin/librarians/", json={"username": "newlib", "password": "longenough"}, headers=admin_headers)
    assert dup.status_code == 409

    listed = client.get("/admin/librarians/", params={"role": "librarian"}, headers=admin_headers).json()
    assert [u["username"] for u in listed] == ["newlib"]

    assert client.delete(f"/admin/librarians/{admin_user.id}", headers=admin_headers).status_code == 400
    assert client.delete(f"/admin/librarians/{new_id}", headers=admin_headers).status_code == 204
    assert client.delete(f"/admin/librarians/{new_id}", headers=admin_headers).status_code == 404

    logs = client.get("/admin/auth-logs", headers=admin_headers).json()
    assert logs[0]["event"] == "login_success"
    assert logs[0]["identifier"] == "root"


def test_admin_updates_and_deactivates_librarian(client, admin_user, admin_headers, librarian_user, librarian_headers):
    assert client.get("/admin/stats", headers=librarian_headers).status_code == 200

    resp = client.put(
        f"/admin/librarians/{librarian_user.id}",
        json={"full_name": "Libby Renamed", "is_active": False},
        headers=admin_headers,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["is_active"] is False
    assert resp.json()["full_name"] == "Libby Renamed"

    # the token issued before deactivation stops working
    assert client.get("/admin/stats", headers=librarian_headers).status_code == 401
    resp = client.post("/auth/login", json={"identifier": "librarian", "password": "staffpass123"})
    assert resp.status_code == 401

    resp = client.put(f"/admin/librarians/{librarian_user.id}", json={"is_active": True, "role": "admin"}, headers=admin_headers)
    assert resp.json()["role"] == "admin"
    assert client.get("/admin/auth-logs", headers=librarian_headers).status_code == 200


def test_admin_cannot_demote_or_deactivate_self(client, admin_user, admin_headers, librarian_headers):
    url = f"/admin/librarians/{admin_user.id}"
    assert client.put(url, json={"is_active": False}, headers=admin_headers).status_code == 400
    assert client.put(url, json={"role": "librarian"}, headers=admin_headers).status_code == 400
    assert client.put(url, json={"full_name": "Still Root"}, headers=admin_headers).status_code == 200

    assert client.put("/admin/librarians/999", json={"is_active": False}, headers=admin_headers).status_code == 404
    assert client.put(url, json={"is_active": False}, headers=librarian_headers).status_code == 403
