"""
Stock projection for sales, including bundled "set" products.

A batch of requested lines is validated against persisted stock plus the
deltas already claimed by earlier lines of the same batch, so two lines that
draw on the same component cannot both be granted the same units. Nothing is
written until every line has validated; the resulting change map is then
applied with one guarded increment per product.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database

from errors import InsufficientStock, InvalidConfiguration, InvalidReference, NotFound

logger = logging.getLogger(__name__)


@dataclass
class LineRequest:
    product_id: ObjectId
    quantity: int


@dataclass
class Requirement:
    """Units of one product consumed by one requested line."""
    product_id: ObjectId
    name: str
    quantity: int


@dataclass
class StockPlan:
    changes: dict[ObjectId, int] = field(default_factory=dict)
    products: dict[ObjectId, dict] = field(default_factory=dict)
    requirements: list[list[Requirement]] = field(default_factory=list)


def accumulate(changes: dict[ObjectId, int], product_id: ObjectId, delta: int) -> None:
    changes[product_id] = changes.get(product_id, 0) + delta


def projected_stock(product_id: ObjectId, stock_map: dict[ObjectId, int], changes: dict[ObjectId, int]) -> int:
    return stock_map.get(product_id, 0) + changes.get(product_id, 0)


def _component_ref(set_item: dict) -> Optional[ObjectId]:
    ref = set_item.get("product") if isinstance(set_item, dict) else None
    if ref is None or isinstance(ref, ObjectId):
        return ref
    try:
        return ObjectId(str(ref))
    except (InvalidId, TypeError):
        return None


def _per_set(set_item: dict) -> int:
    try:
        return int(set_item.get("quantity") or 1)
    except (TypeError, ValueError):
        return 1


class StockProjection:
    """Validates and applies multi-product stock adjustments against the ``product`` collection."""

    def __init__(self, db: Database) -> None:
        self.products = db["product"]

    def load_products_with_components(
        self, product_ids: Iterable[ObjectId], strict: bool = True
    ) -> tuple[dict[ObjectId, dict], dict[ObjectId, int]]:
        """
        Fetch the named products and, for sets, their components (one level deep).

        Returns ``(product_map, stock_map)``. With ``strict`` an absent product
        raises NotFound; otherwise it is left out of the maps.
        """
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}, {}

        product_map = {doc["_id"]: doc for doc in self.products.find({"_id": {"$in": ids}})}
        missing = [pid for pid in ids if pid not in product_map]
        if missing and strict:
            raise NotFound(f"Product not found: {', '.join(str(pid) for pid in missing)}")

        component_ids = set()
        for doc in list(product_map.values()):
            if not doc.get("is_set"):
                continue
            for set_item in doc.get("set_items") or []:
                ref = _component_ref(set_item)
                if ref is not None and ref not in product_map:
                    component_ids.add(ref)
        if component_ids:
            for doc in self.products.find({"_id": {"$in": list(component_ids)}}):
                product_map[doc["_id"]] = doc

        stock_map = {pid: int(doc.get("stock") or 0) for pid, doc in product_map.items()}
        return product_map, stock_map

    def requirements_for(self, product: dict, quantity: int, product_map: dict[ObjectId, dict]) -> list[Requirement]:
        """Expand one requested line into the real products it consumes."""
        if not product.get("is_set"):
            return [Requirement(product["_id"], product.get("name", ""), quantity)]

        set_items = product.get("set_items") or []
        if not set_items:
            raise InvalidConfiguration(f"Set {product.get('name')} has no component items configured.")

        requirements = []
        for set_item in set_items:
            component = product_map.get(_component_ref(set_item))
            if component is None:
                raise InvalidReference(f"Set {product.get('name')} contains an invalid item reference.")
            requirements.append(Requirement(component["_id"], component.get("name", ""), quantity * _per_set(set_item)))
        return requirements

    def plan_sale(self, lines: list[LineRequest]) -> StockPlan:
        """Validate every line and return the negative change map; writes nothing."""
        product_map, stock_map = self.load_products_with_components(line.product_id for line in lines)
        plan = StockPlan(products=product_map)

        for line in lines:
            product = product_map[line.product_id]
            set_name = product.get("name") if product.get("is_set") else None
            requirements = self.requirements_for(product, line.quantity, product_map)
            for requirement in requirements:
                available = projected_stock(requirement.product_id, stock_map, plan.changes)
                if available < requirement.quantity:
                    raise InsufficientStock(requirement.name, requirement.quantity, available, set_name=set_name)
                accumulate(plan.changes, requirement.product_id, -requirement.quantity)
            plan.requirements.append(requirements)

        return plan

    def plan_reversal(self, items: list[dict]) -> dict[ObjectId, int]:
        """
        Positive change map that gives back what stored transaction lines consumed.

        Set lines give back their recorded component consumption; lines without
        one are expanded against the current catalog. Products that no longer
        exist are skipped.
        """
        changes: dict[ObjectId, int] = {}
        unresolved = []
        for item in items:
            components = item.get("set_components") or []
            if item.get("is_set") and components:
                for component in components:
                    accumulate(changes, component["product_id"], int(component.get("quantity") or 0))
            else:
                unresolved.append(item)

        if unresolved:
            product_map, _ = self.load_products_with_components(
                (item["product_id"] for item in unresolved), strict=False
            )
            for item in unresolved:
                product = product_map.get(item["product_id"])
                if product is None:
                    logger.warning(f"Product {item['product_id']} no longer exists; its stock is not restored")
                    continue
                quantity = int(item.get("quantity") or 0)
                if product.get("is_set"):
                    for set_item in product.get("set_items") or []:
                        ref = _component_ref(set_item)
                        if ref in product_map:
                            accumulate(changes, ref, quantity * _per_set(set_item))
                else:
                    accumulate(changes, product["_id"], quantity)

        return changes

    def apply(self, changes: dict[ObjectId, int]) -> None:
        """
        Apply a change map. Decrements only succeed while the stock covers them;
        if one misses, the changes already made by this call are undone and
        InsufficientStock is raised with the stock found at that moment.
        """
        applied: dict[ObjectId, int] = {}
        try:
            for product_id, delta in changes.items():
                if not delta:
                    continue
                if delta < 0:
                    result = self.products.update_one(
                        {"_id": product_id, "stock": {"$gte": -delta}}, {"$inc": {"stock": delta}}
                    )
                    if result.matched_count == 0:
                        current = self.products.find_one({"_id": product_id}, {"name": 1, "stock": 1})
                        if current is None:
                            raise NotFound(f"Product not found: {product_id}")
                        raise InsufficientStock(current.get("name", str(product_id)), -delta, int(current.get("stock") or 0))
                else:
                    self.products.update_one({"_id": product_id}, {"$inc": {"stock": delta}})
                applied[product_id] = delta
        except Exception:
            if applied:
                logger.warning(f"Stock adjustment interrupted; undoing {len(applied)} applied change(s)")
                self.revert(applied)
            raise
        if applied:
            logger.debug(f"Applied stock changes to {len(applied)} product(s)")

    def revert(self, changes: dict[ObjectId, int]) -> None:
        """Undo a change map that was applied earlier, without availability checks."""
        for product_id, delta in changes.items():
            if delta:
                self.products.update_one({"_id": product_id}, {"$inc": {"stock": -delta}})

    def reserve(self, lines: list[LineRequest]) -> StockPlan:
        """Plan a sale and take its stock; the plan's changes are what to revert on a later failure."""
        plan = self.plan_sale(lines)
        self.apply(plan.changes)
        return plan

    def release(self, items: list[dict]) -> dict[ObjectId, int]:
        """Give back the stock held by stored transaction lines; returns the applied change map."""
        changes = self.plan_reversal(items)
        self.apply(changes)
        return changes

    def remove_floored(self, product_id: ObjectId, quantity: int) -> int:
        """
        Take ``quantity`` units off a product, stopping at zero.
        Returns the number of units actually removed.
        """
        while True:
            result = self.products.update_one(
                {"_id": product_id, "stock": {"$gte": quantity}}, {"$inc": {"stock": -quantity}}
            )
            if result.matched_count:
                return quantity
            before = self.products.find_one_and_update(
                {"_id": product_id, "stock": {"$not": {"$gte": quantity}}},
                {"$set": {"stock": 0}},
                return_document=ReturnDocument.BEFORE,
            )
            if before is not None:
                return max(0, int(before.get("stock") or 0))
            # Neither matched: either the product is gone or stock rose in between
            if self.products.count_documents({"_id": product_id}, limit=1) == 0:
                return 0

    def sellable_quantity(self, product_id: ObjectId) -> int:
        """How many units of a product could be sold right now."""
        product_map, stock_map = self.load_products_with_components([product_id])
        product = product_map[product_id]
        if not product.get("is_set"):
            return stock_map[product_id]

        counts = []
        for set_item in product.get("set_items") or []:
            ref = _component_ref(set_item)
            if ref not in stock_map:
                return 0
            counts.append(max(0, stock_map[ref]) // _per_set(set_item))
        return min(counts) if counts else 0

