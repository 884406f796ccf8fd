"""
Stock ledger: purchase entries and the product stock they account for.

Every stored entry has already been added to its product's stock, so editing
or deleting an entry applies the matching correction to the product.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from compensation import Saga
from database import create_document, get_documents, now, to_object_id
from errors import InsufficientStock, InternalFailure, InvalidRequest, NotFound
from schemas import StockEntry, StockEntryCreate, StockEntryUpdate
from stock_projection import StockProjection

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class StockLedger:
    def __init__(self, db: Database, projection: Optional[StockProjection] = None) -> None:
        self.db = db
        self.entries = db["stockentry"]
        self.products = db["product"]
        self.vendors = db["vendor"]
        self.projection = projection or StockProjection(db)

    def get(self, entry_id: str) -> dict:
        entry = self.entries.find_one({"_id": to_object_id(entry_id, "stock entry id")})
        if not entry:
            raise NotFound("Stock entry not found")
        return entry

    def search(
        self,
        product: Optional[str] = None,
        vendor: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> list[dict]:
        filter_dict = {}
        if product:
            filter_dict["product"] = to_object_id(product, "product id")
        if vendor:
            filter_dict["vendor"] = to_object_id(vendor, "vendor id")
        if start_date or end_date:
            filter_dict["created_at"] = {}
            if start_date:
                filter_dict["created_at"]["$gte"] = _as_utc(start_date)
            if end_date:
                filter_dict["created_at"]["$lte"] = _as_utc(end_date)
        return self.populate(get_documents(self.db, "stockentry", filter_dict, sort=[("created_at", -1)]))

    def create(self, request: StockEntryCreate) -> dict:
        if request.quantity is None or request.quantity < 1:
            raise InvalidRequest("Product, vendor, and quantity (>=1) are required")

        product_id = to_object_id(request.product, "product id")
        vendor_id = to_object_id(request.vendor, "vendor id")
        if not self.products.find_one({"_id": product_id}, {"_id": 1}):
            raise NotFound("Product not found")
        if not self.vendors.find_one({"_id": vendor_id}, {"_id": 1}):
            raise NotFound("Vendor not found")

        purchase_price = request.purchase_price or 0
        entry = StockEntry(
            product=product_id,
            vendor=vendor_id,
            quantity=request.quantity,
            invoice_number=(request.invoice_number or "").strip(),
            invoice_date=request.invoice_date or now(),
            purchase_price=purchase_price,
            total_cost=purchase_price * request.quantity,
            remarks=(request.remarks or "").strip(),
            created_by=(request.created_by or "").strip() or "System",
        )

        with Saga("create stock entry") as saga:
            try:
                stored = create_document(self.db, "stockentry", entry)
            except PyMongoError as e:
                raise InternalFailure("Could not save stock entry", e)
            saga.on_failure("remove stock entry", self.entries.delete_one, {"_id": stored["_id"]})

            self.projection.apply({product_id: request.quantity})

        logger.info(f"Stock entry {stored['_id']}: +{request.quantity} for product {product_id}")
        return self.populate([stored])[0]

    def update(self, entry_id: str, request: StockEntryUpdate) -> dict:
        entry = self.get(entry_id)
        updates = {}

        with Saga(f"update stock entry {entry['_id']}") as saga:
            if request.quantity is not None and request.quantity != entry["quantity"]:
                if not self.products.find_one({"_id": entry["product"]}, {"_id": 1}):
                    raise NotFound("Product not found")
                difference = {entry["product"]: request.quantity - entry["quantity"]}
                try:
                    self.projection.apply(difference)
                except InsufficientStock as e:
                    raise InvalidRequest(f"Cannot reduce stock below 0. Available: {e.available}")
                saga.on_failure("undo stock correction", self.projection.revert, difference)

            quantity = request.quantity if request.quantity is not None else entry["quantity"]
            purchase_price = request.purchase_price if request.purchase_price is not None else entry.get("purchase_price", 0)
            if request.quantity is not None:
                updates["quantity"] = quantity
            if request.purchase_price is not None:
                updates["purchase_price"] = purchase_price
            updates["total_cost"] = purchase_price * quantity
            if request.invoice_number is not None:
                updates["invoice_number"] = request.invoice_number.strip()
            if request.invoice_date is not None:
                updates["invoice_date"] = request.invoice_date
            if request.remarks is not None:
                updates["remarks"] = request.remarks.strip()
            updates["updated_at"] = now()

            try:
                self.entries.update_one({"_id": entry["_id"]}, {"$set": updates})
            except PyMongoError as e:
                raise InternalFailure("Could not save stock entry", e)

        return self.populate([self.get(str(entry["_id"]))])[0]

    def delete(self, entry_id: str) -> None:
        entry = self.get(entry_id)

        with Saga(f"delete stock entry {entry['_id']}") as saga:
            removed = self.projection.remove_floored(entry["product"], entry["quantity"])
            saga.on_failure("put stock back", self.projection.apply, {entry["product"]: removed})
            try:
                self.entries.delete_one({"_id": entry["_id"]})
            except PyMongoError as e:
                raise InternalFailure("Could not delete stock entry", e)

        if removed < entry["quantity"]:
            logger.warning(
                f"Stock entry {entry['_id']} removed: product {entry['product']} only had {removed} of "
                f"{entry['quantity']} unit(s) left, stock floored at 0"
            )
        else:
            logger.info(f"Stock entry {entry['_id']} removed: -{removed} for product {entry['product']}")

    def populate(self, entries: list[dict]) -> list[dict]:
        """Replace product and vendor ids with short summaries of the referenced records."""
        product_ids = list({e["product"] for e in entries})
        vendor_ids = list({e["vendor"] for e in entries})
        products = {
            p["_id"]: p for p in self.products.find({"_id": {"$in": product_ids}}, {"name": 1, "price": 1, "stock": 1})
        }
        vendors = {
            v["_id"]: v
            for v in self.vendors.find({"_id": {"$in": vendor_ids}}, {"name": 1, "contact_person": 1, "email": 1, "phone": 1})
        }
        populated = []
        for entry in entries:
            entry = dict(entry)
            entry["product"] = products.get(entry["product"])
            entry["vendor"] = vendors.get(entry["vendor"])
            populated.append(entry)
        return populated
