# tests/test_transactions.py
"""Tests for the transaction ledger."""

import re

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from errors import InsufficientStock, InternalFailure, InvalidRequest, NotFound
from schemas import TransactionCreate, TransactionItemIn, TransactionUpdate
from students import StudentRegistry
from transactions import generate_transaction_id


def sale(student: dict, *lines, **kwargs) -> TransactionCreate:
    return TransactionCreate(
        student_id=str(student["_id"]),
        items=[TransactionItemIn(product_id=str(p["_id"]), quantity=q, price=price) for p, q, price in lines],
        **kwargs,
    )


def test_sale_then_delete_round_trip(db, ledger, make_product, student, stock_of) -> None:
    """Sell 3 of a plain product at 5, then delete the transaction."""
    p1 = make_product("Lab Record", stock=10, price=5)

    transaction = ledger.create(sale(student, (p1, 3, 5)))

    assert stock_of(p1) == 7
    assert transaction["total_amount"] == 15
    assert transaction["items"][0]["total"] == 15
    assert transaction["transaction_id"].startswith("TXN-")
    stored_student = db["student"].find_one({"_id": student["_id"]})
    assert stored_student["items"][str(p1["_id"])] is True

    ledger.delete(str(transaction["_id"]))

    assert stock_of(p1) == 10
    assert db["transaction"].count_documents({}) == 0
    # Received marks survive deletion
    assert db["student"].find_one({"_id": student["_id"]})["items"][str(p1["_id"])] is True


def test_totals_match_line_items(ledger, make_product, student) -> None:
    pen = make_product("Pen", stock=20, price=10)
    notebook = make_product("Notebook", stock=20, price=45.5)

    transaction = ledger.create(sale(student, (pen, 4, 10), (notebook, 2, 45.5)))

    for item in transaction["items"]:
        assert item["total"] == item["quantity"] * item["price"]
    assert transaction["total_amount"] == sum(item["total"] for item in transaction["items"])
    assert transaction["total_amount"] == 131


def test_insufficient_stock_rejects_whole_batch(db, ledger, make_product, student, stock_of) -> None:
    pen = make_product("Pen", stock=10)
    notebook = make_product("Notebook", stock=5)

    with pytest.raises(InvalidRequest) as exc_info:
        ledger.create(sale(student, (pen, 2, 10), (notebook, 6, 40)))

    assert isinstance(exc_info.value, InsufficientStock)
    assert stock_of(pen) == 10
    assert stock_of(notebook) == 5
    assert db["transaction"].count_documents({}) == 0


def test_set_sale_consumes_components_and_records_them(ledger, make_product, student, stock_of) -> None:
    pen = make_product("Pen", stock=10)
    notebook = make_product("Notebook", stock=10)
    kit = make_product("First Year Kit", price=120, set_items=[(pen, 2), (notebook, 1)])

    transaction = ledger.create(sale(student, (kit, 3, 120)))

    assert stock_of(pen) == 4
    assert stock_of(notebook) == 7
    line = transaction["items"][0]
    assert line["is_set"] is True
    assert {c["name"]: c["quantity"] for c in line["set_components"]} == {"Pen": 6, "Notebook": 3}

    ledger.delete(str(transaction["_id"]))

    assert stock_of(pen) == 10
    assert stock_of(notebook) == 10


def test_paid_sale_marks_student_paid(db, ledger, make_product, student) -> None:
    pen = make_product("Pen", stock=10)

    transaction = ledger.create(sale(student, (pen, 1, 10), is_paid=True, payment_method="online"))

    assert transaction["is_paid"] is True
    assert transaction["paid_at"] is not None
    assert transaction["payment_method"] == "online"
    stored_student = db["student"].find_one({"_id": student["_id"]})
    assert stored_student["paid"] is True


def test_unknown_student_is_not_found(ledger, make_product) -> None:
    pen = make_product("Pen", stock=10)

    with pytest.raises(NotFound):
        ledger.create(sale({"_id": ObjectId()}, (pen, 1, 10)))


def test_update_items_converges_to_delete_then_create(ledger, make_product, student, stock_of) -> None:
    pen = make_product("Pen", stock=10, price=10)
    notebook = make_product("Notebook", stock=10, price=40)
    transaction = ledger.create(sale(student, (pen, 3, 10)))

    updated = ledger.update(
        str(transaction["_id"]),
        TransactionUpdate(items=[TransactionItemIn(product_id=str(notebook["_id"]), quantity=4, price=40)]),
    )

    assert stock_of(pen) == 10
    assert stock_of(notebook) == 6
    assert updated["total_amount"] == 160
    assert [item["name"] for item in updated["items"]] == ["Notebook"]


def test_failed_item_update_keeps_previous_reservation(ledger, make_product, student, stock_of) -> None:
    pen = make_product("Pen", stock=10, price=10)
    transaction = ledger.create(sale(student, (pen, 3, 10)))

    with pytest.raises(InsufficientStock):
        ledger.update(
            str(transaction["_id"]),
            TransactionUpdate(items=[TransactionItemIn(product_id=str(pen["_id"]), quantity=20, price=10)]),
        )

    assert stock_of(pen) == 7
    assert ledger.get(str(transaction["_id"]))["items"][0]["quantity"] == 3


def test_update_payment_fields_flips_student_paid(db, ledger, make_product, student) -> None:
    pen = make_product("Pen", stock=10)
    transaction = ledger.create(sale(student, (pen, 1, 10), is_paid=True))

    updated = ledger.update(str(transaction["_id"]), TransactionUpdate(is_paid=False, payment_method="online", remarks=" later "))

    assert updated["is_paid"] is False
    assert updated["paid_at"] is None
    assert updated["payment_method"] == "online"
    assert updated["remarks"] == "later"
    assert db["student"].find_one({"_id": student["_id"]})["paid"] is False


def test_persist_failure_restores_stock(db, ledger, make_product, student, stock_of, mocker) -> None:
    pen = make_product("Pen", stock=10)
    mocker.patch("transactions.create_document", side_effect=PyMongoError("write failed"))

    with pytest.raises(InternalFailure):
        ledger.create(sale(student, (pen, 4, 10)))

    assert stock_of(pen) == 10


def test_student_update_failure_undoes_sale(db, ledger, make_product, student, stock_of, mocker) -> None:
    pen = make_product("Pen", stock=10)
    mocker.patch.object(ledger.registry.students, "update_one", side_effect=PyMongoError("write failed"))

    with pytest.raises(InternalFailure):
        ledger.create(sale(student, (pen, 4, 10), is_paid=True))

    assert stock_of(pen) == 10
    assert db["transaction"].count_documents({}) == 0
    # Marks and payment go in one write, so nothing was left half-recorded
    stored_student = db["student"].find_one({"_id": student["_id"]})
    assert stored_student["items"] == {}
    assert stored_student["paid"] is False


def test_received_mark_survives_product_rename(db, ledger, make_product, student) -> None:
    kit = make_product("Diploma 3rd Year Sem 2 ECE - KIT", stock=5)
    ledger.create(sale(student, (kit, 1, 10)))

    db["product"].update_one({"_id": kit["_id"]}, {"$set": {"name": "DECE - III YEAR SEM - 2 KIT"}})

    received = StudentRegistry(db).received_items(student["_id"])
    assert received == [
        {
            "productId": str(kit["_id"]),
            "name": "DECE - III YEAR SEM - 2 KIT",
            "key": "dece_-_iii_year_sem_-_2_kit",
            "received": True,
        }
    ]


def test_search_filters(ledger, make_product, student) -> None:
    pen = make_product("Pen", stock=10)
    ledger.create(sale(student, (pen, 1, 10), is_paid=True))
    ledger.create(sale(student, (pen, 1, 10)))

    assert len(ledger.search(course="B.Tech")) == 2
    assert len(ledger.search(course="Diploma")) == 0
    assert len(ledger.search(is_paid="true")) == 1
    assert len(ledger.search(student_id=str(student["_id"]), is_paid="false")) == 1
    assert len(ledger.for_student(str(student["_id"]))) == 2


def test_generate_transaction_id_format() -> None:
    assert re.fullmatch(r"TXN-\d{13}-[A-Z0-9]{6}", generate_transaction_id())


def test_student_with_missing_fields_still_gets_a_snapshot(db, ledger, make_product) -> None:
    legacy = db["student"].insert_one({"name": "Old Record", "student_id": None, "course": "Diploma", "year": None})
    pen = make_product("Pen", stock=10)

    transaction = ledger.create(sale({"_id": legacy.inserted_id}, (pen, 1, 10)))

    assert transaction["student"]["year"] == 0
    assert transaction["student"]["student_id"] == ""


def test_overlapping_deletes_restore_stock_once(ledger, make_product, student, stock_of, mocker) -> None:
    pen = make_product("Pen", stock=10)
    transaction = ledger.create(sale(student, (pen, 3, 10)))
    release = ledger.projection.release
    second_delete = []

    def release_after_another_delete(items):
        if not second_delete:
            try:
                ledger.delete(str(transaction["_id"]))
                second_delete.append("deleted")
            except NotFound:
                second_delete.append("not found")
        return release(items)

    mocker.patch.object(ledger.projection, "release", side_effect=release_after_another_delete)

    ledger.delete(str(transaction["_id"]))

    assert second_delete == ["not found"]
    assert stock_of(pen) == 10


def test_delete_during_update_restores_stock_once(db, ledger, make_product, student, stock_of, mocker) -> None:
    pen = make_product("Pen", stock=10)
    transaction = ledger.create(sale(student, (pen, 3, 10)))
    release = ledger.projection.release
    interleaved = []

    def release_after_a_delete(items):
        if not interleaved:
            interleaved.append(True)
            ledger.delete(str(transaction["_id"]))
        return release(items)

    mocker.patch.object(ledger.projection, "release", side_effect=release_after_a_delete)

    with pytest.raises(NotFound):
        ledger.update(
            str(transaction["_id"]),
            TransactionUpdate(items=[TransactionItemIn(product_id=str(pen["_id"]), quantity=5, price=10)]),
        )

    assert stock_of(pen) == 10
    assert db["transaction"].count_documents({}) == 0


def test_stale_update_is_rejected_and_undone(db, ledger, make_product, student, stock_of, mocker) -> None:
    pen = make_product("Pen", stock=10)
    transaction = ledger.create(sale(student, (pen, 3, 10)))
    stale = ledger.get(str(transaction["_id"]))
    # Someone else saved the record after this request read it
    db["transaction"].update_one({"_id": transaction["_id"]}, {"$inc": {"revision": 1}})
    mocker.patch.object(ledger, "get", return_value=stale)

    with pytest.raises(InvalidRequest) as exc_info:
        ledger.update(
            str(transaction["_id"]),
            TransactionUpdate(items=[TransactionItemIn(product_id=str(pen["_id"]), quantity=5, price=10)]),
        )

    assert "changed by another request" in exc_info.value.message
    assert stock_of(pen) == 7
    assert db["transaction"].find_one({"_id": transaction["_id"]})["items"][0]["quantity"] == 3
