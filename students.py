"""Student registry: identity snapshots, items-received marks and payment status."""
import logging
import re
from typing import Iterable, Optional

from bson import ObjectId
from pymongo.database import Database

from database import now
from errors import NotFound

logger = logging.getLogger(__name__)


def item_key(name: str) -> str:
    """Legacy display key for a product name, e.g. ``"Lab Coat L"`` -> ``"lab_coat_l"``."""
    return re.sub(r"\s+", "_", (name or "").lower())


class StudentRegistry:
    def __init__(self, db: Database) -> None:
        self.students = db["student"]
        self.products = db["product"]

    def get(self, student_id: ObjectId) -> dict:
        student = self.students.find_one({"_id": student_id})
        if not student:
            raise NotFound("Student not found")
        return student

    @staticmethod
    def snapshot(student: dict) -> dict:
        # Older student records may carry nulls in any of these
        return {
            "user_id": student["_id"],
            "name": student.get("name") or "",
            "student_id": str(student.get("student_id") or ""),
            "course": student.get("course") or "",
            "year": student.get("year") or 0,
            "branch": student.get("branch") or "",
        }

    def record_sale(self, student_id: ObjectId, items: Iterable[dict], paid: Optional[bool] = None) -> None:
        """
        Marks every line's product as received and, when ``paid`` is given, the
        payment status, in a single write so a failure leaves the student untouched.

        Keys are product ids, so a later rename of the product keeps the mark; the
        name is kept for audit only. Marks are only ever set, never cleared.
        """
        updates = {}
        for item in items:
            key = str(item["product_id"])
            updates[f"items.{key}"] = True
            updates[f"item_names.{key}"] = item.get("name", "")
        if paid is not None:
            updates["paid"] = paid
            updates["paid_at"] = now() if paid else None
        if not updates:
            return
        updates["updated_at"] = now()
        self.students.update_one({"_id": student_id}, {"$set": updates})

    def received_items(self, student_id: ObjectId) -> list[dict]:
        """Items-received view with display names resolved from the current catalog."""
        student = self.get(student_id)
        marks = student.get("items") or {}
        recorded_names = student.get("item_names") or {}

        product_ids = []
        for key in marks:
            if ObjectId.is_valid(key):
                product_ids.append(ObjectId(key))
        names = {str(doc["_id"]): doc.get("name", "") for doc in self.products.find({"_id": {"$in": product_ids}}, {"name": 1})}

        received = []
        for key, value in marks.items():
            name = names.get(key) or recorded_names.get(key) or key
            received.append({"productId": key, "name": name, "key": item_key(name), "received": bool(value)})
        return received
