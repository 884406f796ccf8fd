"""
Transaction ledger: sales to students and their effect on stock.

Each write runs as a saga over three collections. Stock is reserved first,
then the transaction document is written, then the student record is
updated; if a later step fails the earlier ones are undone.
"""
import logging
import secrets
import string
import time
from typing import Optional

from bson import ObjectId
from pydantic import ValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError

from compensation import Saga
from database import create_document, get_documents, now, to_object_id
from errors import InternalFailure, InvalidRequest, NotFound
from schemas import (
    SetComponent,
    Transaction,
    TransactionCreate,
    TransactionItem,
    TransactionItemIn,
    TransactionUpdate,
)
from settings import settings
from stock_projection import LineRequest, StockPlan, StockProjection
from students import StudentRegistry

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_transaction_id() -> str:
    """Human-readable id like ``TXN-1717171717171-4G7KQZ``."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{settings.TRANSACTION_ID_PREFIX}-{int(time.time() * 1000)}-{suffix}"


class TransactionLedger:
    def __init__(self, db: Database, projection: Optional[StockProjection] = None) -> None:
        self.db = db
        self.transactions = db["transaction"]
        self.projection = projection or StockProjection(db)
        self.registry = StudentRegistry(db)

    # Reads

    def get(self, transaction_id: str) -> dict:
        transaction = self.transactions.find_one({"_id": to_object_id(transaction_id, "transaction id")})
        if not transaction:
            raise NotFound("Transaction not found")
        return transaction

    def search(
        self,
        course: Optional[str] = None,
        student_id: Optional[str] = None,
        payment_method: Optional[str] = None,
        is_paid: Optional[str] = None,
    ) -> list[dict]:
        filter_dict = {}
        if course:
            filter_dict["student.course"] = course
        if student_id:
            filter_dict["student.user_id"] = to_object_id(student_id, "student id")
        if payment_method:
            filter_dict["payment_method"] = payment_method
        if is_paid is not None:
            filter_dict["is_paid"] = str(is_paid).lower() == "true"
        return get_documents(self.db, "transaction", filter_dict, sort=[("transaction_date", -1)])

    def for_student(self, student_id: str) -> list[dict]:
        student = self.registry.get(to_object_id(student_id, "student id"))
        return get_documents(
            self.db, "transaction", {"student.user_id": student["_id"]}, sort=[("transaction_date", -1)]
        )

    # Writes

    def create(self, request: TransactionCreate) -> dict:
        if not request.student_id or not request.items:
            raise InvalidRequest("Student ID and items are required")

        student = self.registry.get(to_object_id(request.student_id, "student id"))
        transaction_id = generate_transaction_id()

        with Saga(f"create transaction {transaction_id}") as saga:
            plan = self.projection.reserve(self._line_requests(request.items))
            saga.on_failure("restore reserved stock", self.projection.revert, plan.changes)

            items = self._line_items(request.items, plan)
            transaction = self._build(
                transaction_id=transaction_id,
                student=StudentRegistry.snapshot(student),
                items=items,
                total_amount=sum(item.total for item in items),
                payment_method=request.payment_method or settings.DEFAULT_PAYMENT_METHOD,
                is_paid=request.is_paid,
                paid_at=now() if request.is_paid else None,
                transaction_date=now(),
                remarks=(request.remarks or "").strip(),
            )

            stored = self._insert(transaction)
            saga.on_failure("remove transaction", self.transactions.delete_one, {"_id": stored["_id"]})

            self._update_student(student["_id"], stored["items"], True if request.is_paid else None)

        logger.info(
            f"Created transaction {stored['transaction_id']} for {student.get('name')} "
            f"({len(items)} line(s), total {stored['total_amount']})"
        )
        return stored

    def update(self, transaction_id: str, request: TransactionUpdate) -> dict:
        transaction = self.get(transaction_id)
        updates = {}

        with Saga(f"update transaction {transaction['transaction_id']}") as saga:
            if request.items:
                released = self.projection.release(transaction.get("items") or [])
                saga.on_failure("reserve previous items again", self.projection.apply, {k: -v for k, v in released.items()})

                plan = self.projection.reserve(self._line_requests(request.items))
                saga.on_failure("release new items", self.projection.revert, plan.changes)

                items = self._line_items(request.items, plan)
                updates["items"] = [item.model_dump() for item in items]
                updates["total_amount"] = sum(item.total for item in items)

            if request.payment_method is not None:
                updates["payment_method"] = request.payment_method
            if request.is_paid is not None:
                updates["is_paid"] = request.is_paid
                updates["paid_at"] = now() if request.is_paid else None
            if request.remarks is not None:
                updates["remarks"] = request.remarks.strip()
            updates["updated_at"] = now()

            # Only lands if nobody else changed or deleted the record since it was read
            self._write(transaction, {"$set": updates, "$inc": {"revision": 1}})
            saga.on_failure("restore previous transaction", self.transactions.replace_one, {"_id": transaction["_id"]}, transaction)

            self._update_student(transaction["student"]["user_id"], updates.get("items") or [], request.is_paid, required=False)

        logger.info(f"Updated transaction {transaction['transaction_id']}: {', '.join(k for k in updates if k != 'updated_at')}")
        return self.get(str(transaction["_id"]))

    def delete(self, transaction_id: str) -> None:
        object_id = to_object_id(transaction_id, "transaction id")
        try:
            transaction = self.transactions.find_one_and_delete({"_id": object_id})
        except PyMongoError as e:
            raise InternalFailure("Could not delete transaction", e)
        if not transaction:
            raise NotFound("Transaction not found")

        # The record is claimed; a concurrent delete of the same id now gets NotFound
        with Saga(f"delete transaction {transaction['transaction_id']}") as saga:
            saga.on_failure("put transaction back", self.transactions.insert_one, transaction)
            self.projection.release(transaction.get("items") or [])

        logger.info(f"Deleted transaction {transaction['transaction_id']} and restored its stock")

    # Helpers

    @staticmethod
    def _line_requests(items: list[TransactionItemIn]) -> list[LineRequest]:
        return [LineRequest(to_object_id(item.product_id, "product id"), item.quantity) for item in items]

    @staticmethod
    def _line_items(requested: list[TransactionItemIn], plan: StockPlan) -> list[TransactionItem]:
        items = []
        for item, requirements in zip(requested, plan.requirements):
            product_id = to_object_id(item.product_id, "product id")
            product = plan.products[product_id]
            is_set = bool(product.get("is_set"))
            price = float(item.price)
            items.append(
                TransactionItem(
                    product_id=product_id,
                    name=item.name or product.get("name", ""),
                    quantity=item.quantity,
                    price=price,
                    total=item.quantity * price,
                    is_set=is_set,
                    set_components=[
                        SetComponent(product_id=r.product_id, name=r.name, quantity=r.quantity) for r in requirements
                    ]
                    if is_set
                    else [],
                )
            )
        return items

    @staticmethod
    def _build(**fields) -> Transaction:
        try:
            return Transaction(**fields)
        except ValidationError as e:
            raise InternalFailure("Could not build transaction from stored records", e)

    def _insert(self, transaction: Transaction) -> dict:
        try:
            return create_document(self.db, "transaction", transaction)
        except PyMongoError as e:
            raise InternalFailure("Could not save transaction", e)

    def _write(self, transaction: dict, update: dict) -> None:
        try:
            result = self.transactions.update_one(
                {"_id": transaction["_id"], "revision": transaction.get("revision")}, update
            )
        except PyMongoError as e:
            raise InternalFailure("Could not save transaction", e)
        if result.matched_count == 0:
            if self.transactions.count_documents({"_id": transaction["_id"]}, limit=1) == 0:
                raise NotFound("Transaction not found")
            raise InvalidRequest("Transaction was changed by another request; reload it and try again")

    def _update_student(self, student_id: ObjectId, items: list[dict], is_paid: Optional[bool], required: bool = True) -> None:
        """Record received items and payment on the student; a missing student is only an error on create."""
        if not required and not self.registry.students.find_one({"_id": student_id}, {"_id": 1}):
            logger.warning(f"Student {student_id} no longer exists; items-received map not updated")
            return
        try:
            self.registry.record_sale(student_id, items, paid=is_paid)
        except PyMongoError as e:
            raise InternalFailure("Could not update student", e)
