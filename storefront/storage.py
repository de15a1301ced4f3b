"""
Persistence for users, address books, catalog, carts and orders.

``MongoStorage`` is the production backend (motor). ``MemoryStorage`` keeps
everything in process and is used for local development and the test suite.
Both expose the same coroutine API; multi-step writes go through
``transaction()`` and pass the yielded session to each call.
"""
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional, Type, TypeVar

from bson import ObjectId
from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from shared.utils import get_db_client

from storefront.models import (
    AddressDB, CartDB, CartItemDB, DBModel, OrderDB, OrderItemDB, ProductDB, UserDB, utcnow
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=DBModel)


class DuplicateError(Exception):
    """A unique constraint (username, email, payment intent) was violated."""


class TransactionConflict(Exception):
    """A concurrent write aborted the transaction; the whole unit may be retried."""


def new_id() -> str:
    return str(ObjectId())


class Storage(ABC):
    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    def transaction(self):
        """Async context manager yielding a session; everything written with it commits or rolls back together."""

    # Users
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserDB]: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[UserDB]: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[UserDB]: ...

    @abstractmethod
    async def create_user(self, user: UserDB) -> UserDB: ...

    @abstractmethod
    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[UserDB]: ...

    @abstractmethod
    async def increment_token_version(self, user_id: str) -> Optional[UserDB]: ...

    @abstractmethod
    async def list_users(self) -> List[UserDB]: ...

    # Address book
    @abstractmethod
    async def list_addresses(self, user_id: str, session=None) -> List[AddressDB]:
        """The user's addresses, default first, then newest first."""

    @abstractmethod
    async def get_address(self, address_id: str, session=None) -> Optional[AddressDB]: ...

    @abstractmethod
    async def create_address(self, address: AddressDB, session=None) -> AddressDB: ...

    @abstractmethod
    async def update_address(self, address_id: str, fields: Dict[str, Any], session=None) -> Optional[AddressDB]: ...

    @abstractmethod
    async def delete_address(self, address_id: str, session=None) -> bool: ...

    @abstractmethod
    async def clear_default_address(self, user_id: str, session=None) -> None: ...

    # Products
    @abstractmethod
    async def get_product(self, product_id: str, session=None) -> Optional[ProductDB]: ...

    @abstractmethod
    async def list_products(self, limit: int = 50, offset: int = 0, include_inactive: bool = False) -> List[ProductDB]: ...

    @abstractmethod
    async def create_product(self, product: ProductDB) -> ProductDB: ...

    @abstractmethod
    async def update_product(self, product_id: str, fields: Dict[str, Any]) -> Optional[ProductDB]: ...

    # Carts
    @abstractmethod
    async def get_or_create_cart(self, user_id: str) -> CartDB: ...

    @abstractmethod
    async def get_cart_item(self, item_id: str) -> Optional[CartItemDB]: ...

    @abstractmethod
    async def list_cart_items(self, cart_id: str, session=None) -> List[CartItemDB]: ...

    @abstractmethod
    async def merge_cart_item(self, cart_id: str, product_id: str, quantity: int) -> CartItemDB:
        """Insert the (cart, product) line or add ``quantity`` to the existing one, atomically."""

    @abstractmethod
    async def set_cart_item_quantity(self, cart_id: str, item_id: str, quantity: int) -> Optional[CartItemDB]: ...

    @abstractmethod
    async def delete_cart_item(self, cart_id: str, item_id: str) -> bool: ...

    @abstractmethod
    async def clear_cart(self, cart_id: str, session=None) -> int: ...

    @abstractmethod
    async def remove_cart_quantities(self, cart_id: str, quantities: Dict[str, int], session=None) -> None:
        """Subtract each quantity from its line and delete lines that reach zero."""

    # Orders
    @abstractmethod
    async def insert_order(self, order: OrderDB, session=None) -> OrderDB: ...

    @abstractmethod
    async def insert_order_item(self, item: OrderItemDB, session=None) -> OrderItemDB: ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[OrderDB]: ...

    @abstractmethod
    async def get_order_by_payment_intent(self, payment_intent_id: str, session=None) -> Optional[OrderDB]: ...

    @abstractmethod
    async def list_orders(self, user_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[OrderDB]: ...

    @abstractmethod
    async def list_order_items(self, order_id: str) -> List[OrderItemDB]: ...

    @abstractmethod
    async def update_order_status(self, order_id: str, status: str, expected_status: Optional[str] = None) -> Optional[OrderDB]:
        """Set the status; when ``expected_status`` is given, only if the stored status still matches it."""


# --- MongoDB ---

class DecimalCodec(TypeCodec):
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value):
        return Decimal128(value)

    def transform_bson(self, value):
        return value.to_decimal()


def str_to_oid(id: str) -> Optional[ObjectId]:
    if not isinstance(id, str) or not ObjectId.is_valid(id):
        return None
    return ObjectId(id)


def to_doc(model: DBModel) -> dict:
    return model.model_dump(exclude={"id"})


def from_doc(model: Type[M], doc: Optional[dict]) -> Optional[M]:
    if doc is None:
        return None
    doc["_id"] = str(doc["_id"])
    return model.model_validate(doc)


class MongoStorage(Storage):
    """
    Multi-document transactions need a replica set (a single-node one is
    enough); plain standalone servers reject ``start_transaction``.
    """

    def __init__(self, client: AsyncIOMotorClient, db_name: str):
        self.client = client
        codec_options = CodecOptions(type_registry=TypeRegistry([DecimalCodec()]), tz_aware=True)
        self.db = client.get_database(db_name, codec_options=codec_options)

    async def connect(self) -> None:
        await self.db.users.create_index("username", unique=True)
        await self.db.users.create_index("email", unique=True)
        await self.db.carts.create_index("user_id", unique=True)
        await self.db.cart_items.create_index([("cart_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
        await self.db.orders.create_index("user_id")
        await self.db.orders.create_index(
            "payment_intent_id", unique=True,
            partialFilterExpression={"payment_intent_id": {"$type": "string"}},
        )
        await self.db.order_items.create_index("order_id")
        await self.db.addresses.create_index("user_id")

    async def close(self) -> None:
        self.client.close()

    async def ping(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except Exception:
            return False

    @asynccontextmanager
    async def transaction(self):
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield session
        except PyMongoError as e:
            if e.has_error_label("TransientTransactionError"):
                raise TransactionConflict(str(e))
            raise

    async def _find(self, collection: str, model: Type[M], id: str, session=None) -> Optional[M]:
        oid = str_to_oid(id)
        if oid is None:
            return None
        return from_doc(model, await self.db[collection].find_one({"_id": oid}, session=session))

    async def _update(self, collection: str, model: Type[M], query: dict, update: dict, session=None) -> Optional[M]:
        doc = await self.db[collection].find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER, session=session
        )
        return from_doc(model, doc)

    # Users
    async def get_user(self, user_id: str) -> Optional[UserDB]:
        return await self._find("users", UserDB, user_id)

    async def get_user_by_username(self, username: str) -> Optional[UserDB]:
        return from_doc(UserDB, await self.db.users.find_one({"username": username}))

    async def get_user_by_email(self, email: str) -> Optional[UserDB]:
        return from_doc(UserDB, await self.db.users.find_one({"email": email}))

    async def create_user(self, user: UserDB) -> UserDB:
        try:
            result = await self.db.users.insert_one(to_doc(user))
        except DuplicateKeyError:
            raise DuplicateError("Username or email already registered")
        return user.model_copy(update={"id": str(result.inserted_id)})

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[UserDB]:
        oid = str_to_oid(user_id)
        if oid is None:
            return None
        try:
            return await self._update("users", UserDB, {"_id": oid}, {"$set": {**fields, "updated_at": utcnow()}})
        except DuplicateKeyError:
            raise DuplicateError("Username or email already registered")

    async def increment_token_version(self, user_id: str) -> Optional[UserDB]:
        oid = str_to_oid(user_id)
        if oid is None:
            return None
        return await self._update(
            "users", UserDB, {"_id": oid},
            {"$inc": {"token_version": 1}, "$set": {"updated_at": utcnow()}},
        )

    async def list_users(self) -> List[UserDB]:
        cursor = self.db.users.find().sort("created_at", ASCENDING)
        return [from_doc(UserDB, doc) async for doc in cursor]

    # Address book
    async def list_addresses(self, user_id: str, session=None) -> List[AddressDB]:
        cursor = self.db.addresses.find({"user_id": user_id}, session=session).sort([("is_default", DESCENDING), ("created_at", DESCENDING)])
        return [from_doc(AddressDB, doc) async for doc in cursor]

    async def get_address(self, address_id: str, session=None) -> Optional[AddressDB]:
        return await self._find("addresses", AddressDB, address_id, session=session)

    async def create_address(self, address: AddressDB, session=None) -> AddressDB:
        result = await self.db.addresses.insert_one(to_doc(address), session=session)
        return address.model_copy(update={"id": str(result.inserted_id)})

    async def update_address(self, address_id: str, fields: Dict[str, Any], session=None) -> Optional[AddressDB]:
        oid = str_to_oid(address_id)
        if oid is None:
            return None
        return await self._update(
            "addresses", AddressDB, {"_id": oid}, {"$set": {**fields, "updated_at": utcnow()}}, session=session
        )

    async def delete_address(self, address_id: str, session=None) -> bool:
        oid = str_to_oid(address_id)
        if oid is None:
            return False
        result = await self.db.addresses.delete_one({"_id": oid}, session=session)
        return result.deleted_count == 1

    async def clear_default_address(self, user_id: str, session=None) -> None:
        await self.db.addresses.update_many(
            {"user_id": user_id, "is_default": True}, {"$set": {"is_default": False}}, session=session
        )

    # Products
    async def get_product(self, product_id: str, session=None) -> Optional[ProductDB]:
        return await self._find("products", ProductDB, product_id, session=session)

    async def list_products(self, limit: int = 50, offset: int = 0, include_inactive: bool = False) -> List[ProductDB]:
        query = {} if include_inactive else {"is_active": True}
        cursor = self.db.products.find(query).sort("created_at", ASCENDING).skip(offset).limit(limit)
        return [from_doc(ProductDB, doc) async for doc in cursor]

    async def create_product(self, product: ProductDB) -> ProductDB:
        result = await self.db.products.insert_one(to_doc(product))
        return product.model_copy(update={"id": str(result.inserted_id)})

    async def update_product(self, product_id: str, fields: Dict[str, Any]) -> Optional[ProductDB]:
        oid = str_to_oid(product_id)
        if oid is None:
            return None
        return await self._update("products", ProductDB, {"_id": oid}, {"$set": {**fields, "updated_at": utcnow()}})

    # Carts
    async def get_or_create_cart(self, user_id: str) -> CartDB:
        now = utcnow()
        # Two concurrent upserts can race on the unique index; the loser retries and finds the winner's row
        for attempt in range(2):
            try:
                doc = await self.db.carts.find_one_and_update(
                    {"user_id": user_id},
                    {"$setOnInsert": {"user_id": user_id, "created_at": now, "updated_at": now}},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
                return from_doc(CartDB, doc)
            except DuplicateKeyError:
                if attempt:
                    raise

    async def get_cart_item(self, item_id: str) -> Optional[CartItemDB]:
        return await self._find("cart_items", CartItemDB, item_id)

    async def list_cart_items(self, cart_id: str, session=None) -> List[CartItemDB]:
        cursor = self.db.cart_items.find({"cart_id": cart_id}, session=session).sort("added_at", ASCENDING)
        return [from_doc(CartItemDB, doc) async for doc in cursor]

    async def merge_cart_item(self, cart_id: str, product_id: str, quantity: int) -> CartItemDB:
        for attempt in range(2):
            try:
                doc = await self.db.cart_items.find_one_and_update(
                    {"cart_id": cart_id, "product_id": product_id},
                    {
                        "$inc": {"quantity": quantity},
                        "$setOnInsert": {"cart_id": cart_id, "product_id": product_id, "added_at": utcnow()},
                    },
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
                break
            except DuplicateKeyError:
                if attempt:
                    raise
        await self.db.carts.update_one({"_id": str_to_oid(cart_id)}, {"$set": {"updated_at": utcnow()}})
        return from_doc(CartItemDB, doc)

    async def set_cart_item_quantity(self, cart_id: str, item_id: str, quantity: int) -> Optional[CartItemDB]:
        oid = str_to_oid(item_id)
        if oid is None:
            return None
        return await self._update("cart_items", CartItemDB, {"_id": oid, "cart_id": cart_id}, {"$set": {"quantity": quantity}})

    async def delete_cart_item(self, cart_id: str, item_id: str) -> bool:
        oid = str_to_oid(item_id)
        if oid is None:
            return False
        result = await self.db.cart_items.delete_one({"_id": oid, "cart_id": cart_id})
        return result.deleted_count == 1

    async def clear_cart(self, cart_id: str, session=None) -> int:
        result = await self.db.cart_items.delete_many({"cart_id": cart_id}, session=session)
        return result.deleted_count

    async def remove_cart_quantities(self, cart_id: str, quantities: Dict[str, int], session=None) -> None:
        for item_id, quantity in quantities.items():
            oid = str_to_oid(item_id)
            if oid is None:
                continue
            await self.db.cart_items.update_one(
                {"_id": oid, "cart_id": cart_id}, {"$inc": {"quantity": -quantity}}, session=session
            )
        await self.db.cart_items.delete_many({"cart_id": cart_id, "quantity": {"$lte": 0}}, session=session)

    # Orders
    async def insert_order(self, order: OrderDB, session=None) -> OrderDB:
        try:
            result = await self.db.orders.insert_one(to_doc(order), session=session)
        except DuplicateKeyError:
            raise DuplicateError(f"Order already recorded for payment {order.payment_intent_id}")
        return order.model_copy(update={"id": str(result.inserted_id)})

    async def insert_order_item(self, item: OrderItemDB, session=None) -> OrderItemDB:
        result = await self.db.order_items.insert_one(to_doc(item), session=session)
        return item.model_copy(update={"id": str(result.inserted_id)})

    async def get_order(self, order_id: str) -> Optional[OrderDB]:
        return await self._find("orders", OrderDB, order_id)

    async def get_order_by_payment_intent(self, payment_intent_id: str, session=None) -> Optional[OrderDB]:
        doc = await self.db.orders.find_one({"payment_intent_id": payment_intent_id}, session=session)
        return from_doc(OrderDB, doc)

    async def list_orders(self, user_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[OrderDB]:
        query = {"user_id": user_id} if user_id else {}
        cursor = self.db.orders.find(query).sort("created_at", DESCENDING).skip(offset).limit(limit)
        return [from_doc(OrderDB, doc) async for doc in cursor]

    async def list_order_items(self, order_id: str) -> List[OrderItemDB]:
        cursor = self.db.order_items.find({"order_id": order_id})
        return [from_doc(OrderItemDB, doc) async for doc in cursor]

    async def update_order_status(self, order_id: str, status: str, expected_status: Optional[str] = None) -> Optional[OrderDB]:
        oid = str_to_oid(order_id)
        if oid is None:
            return None
        query = {"_id": oid}
        if expected_status is not None:
            query["status"] = expected_status
        return await self._update("orders", OrderDB, query, {"$set": {"status": status, "updated_at": utcnow()}})


# --- In-process ---

class MemoryStorage(Storage):
    """
    Every method finishes without awaiting, so each call is atomic on the
    event loop. ``transaction()`` serializes transactional units with a lock
    and restores a snapshot of all tables if the unit raises.
    """

    def __init__(self):
        self.users: Dict[str, UserDB] = {}
        self.products: Dict[str, ProductDB] = {}
        self.carts: Dict[str, CartDB] = {}
        self.cart_items: Dict[str, CartItemDB] = {}
        self.orders: Dict[str, OrderDB] = {}
        self.order_items: Dict[str, OrderItemDB] = {}
        self.addresses: Dict[str, AddressDB] = {}
        self._lock = asyncio.Lock()

    TABLES = ("users", "products", "carts", "cart_items", "orders", "order_items", "addresses")

    async def ping(self) -> bool:
        return True

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self.TABLES}
            try:
                yield None
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                raise

    @staticmethod
    def _copy(model: Optional[M]) -> Optional[M]:
        return model.model_copy(deep=True) if model is not None else None

    def _store(self, table: Dict[str, M], model: M) -> M:
        stored = model.model_copy(deep=True, update={"id": model.id or new_id()})
        table[stored.id] = stored
        return self._copy(stored)

    def _patch(self, table: Dict[str, M], id: str, fields: Dict[str, Any]) -> Optional[M]:
        current = table.get(id)
        if current is None:
            return None
        data = current.model_dump(by_alias=True)
        data.update(fields)
        updated = type(current).model_validate(data)
        table[id] = updated
        return self._copy(updated)

    # Users
    async def get_user(self, user_id: str) -> Optional[UserDB]:
        return self._copy(self.users.get(user_id))

    async def get_user_by_username(self, username: str) -> Optional[UserDB]:
        return self._copy(next((u for u in self.users.values() if u.username == username), None))

    async def get_user_by_email(self, email: str) -> Optional[UserDB]:
        return self._copy(next((u for u in self.users.values() if u.email == email), None))

    def _check_unique_user(self, username: str, email: str, exclude: Optional[str] = None):
        for user in self.users.values():
            if user.id != exclude and (user.username == username or user.email == email):
                raise DuplicateError("Username or email already registered")

    async def create_user(self, user: UserDB) -> UserDB:
        self._check_unique_user(user.username, user.email)
        return self._store(self.users, user)

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[UserDB]:
        current = self.users.get(user_id)
        if current is None:
            return None
        self._check_unique_user(fields.get("username", current.username), fields.get("email", current.email), exclude=user_id)
        return self._patch(self.users, user_id, {**fields, "updated_at": utcnow()})

    async def increment_token_version(self, user_id: str) -> Optional[UserDB]:
        current = self.users.get(user_id)
        if current is None:
            return None
        return self._patch(self.users, user_id, {"token_version": current.token_version + 1, "updated_at": utcnow()})

    async def list_users(self) -> List[UserDB]:
        return [self._copy(u) for u in sorted(self.users.values(), key=lambda u: u.created_at)]

    # Address book
    async def list_addresses(self, user_id: str, session=None) -> List[AddressDB]:
        addresses = [a for a in self.addresses.values() if a.user_id == user_id]
        addresses.sort(key=lambda a: (a.is_default, a.created_at), reverse=True)
        return [self._copy(a) for a in addresses]

    async def get_address(self, address_id: str, session=None) -> Optional[AddressDB]:
        return self._copy(self.addresses.get(address_id))

    async def create_address(self, address: AddressDB, session=None) -> AddressDB:
        return self._store(self.addresses, address)

    async def update_address(self, address_id: str, fields: Dict[str, Any], session=None) -> Optional[AddressDB]:
        return self._patch(self.addresses, address_id, {**fields, "updated_at": utcnow()})

    async def delete_address(self, address_id: str, session=None) -> bool:
        return self.addresses.pop(address_id, None) is not None

    async def clear_default_address(self, user_id: str, session=None) -> None:
        for address in list(self.addresses.values()):
            if address.user_id == user_id and address.is_default:
                self._patch(self.addresses, address.id, {"is_default": False})

    # Products
    async def get_product(self, product_id: str, session=None) -> Optional[ProductDB]:
        return self._copy(self.products.get(product_id))

    async def list_products(self, limit: int = 50, offset: int = 0, include_inactive: bool = False) -> List[ProductDB]:
        products = [p for p in self.products.values() if include_inactive or p.is_active]
        products.sort(key=lambda p: p.created_at)
        return [self._copy(p) for p in products[offset:offset + limit]]

    async def create_product(self, product: ProductDB) -> ProductDB:
        return self._store(self.products, product)

    async def update_product(self, product_id: str, fields: Dict[str, Any]) -> Optional[ProductDB]:
        return self._patch(self.products, product_id, {**fields, "updated_at": utcnow()})

    # Carts
    async def get_or_create_cart(self, user_id: str) -> CartDB:
        for cart in self.carts.values():
            if cart.user_id == user_id:
                return self._copy(cart)
        return self._store(self.carts, CartDB(user_id=user_id))

    async def get_cart_item(self, item_id: str) -> Optional[CartItemDB]:
        return self._copy(self.cart_items.get(item_id))

    async def list_cart_items(self, cart_id: str, session=None) -> List[CartItemDB]:
        items = [i for i in self.cart_items.values() if i.cart_id == cart_id]
        items.sort(key=lambda i: i.added_at)
        return [self._copy(i) for i in items]

    async def merge_cart_item(self, cart_id: str, product_id: str, quantity: int) -> CartItemDB:
        for item in self.cart_items.values():
            if item.cart_id == cart_id and item.product_id == product_id:
                return self._patch(self.cart_items, item.id, {"quantity": item.quantity + quantity})
        return self._store(self.cart_items, CartItemDB(cart_id=cart_id, product_id=product_id, quantity=quantity))

    async def set_cart_item_quantity(self, cart_id: str, item_id: str, quantity: int) -> Optional[CartItemDB]:
        item = self.cart_items.get(item_id)
        if item is None or item.cart_id != cart_id:
            return None
        return self._patch(self.cart_items, item_id, {"quantity": quantity})

    async def delete_cart_item(self, cart_id: str, item_id: str) -> bool:
        item = self.cart_items.get(item_id)
        if item is None or item.cart_id != cart_id:
            return False
        del self.cart_items[item_id]
        return True

    async def clear_cart(self, cart_id: str, session=None) -> int:
        doomed = [id for id, item in self.cart_items.items() if item.cart_id == cart_id]
        for id in doomed:
            del self.cart_items[id]
        return len(doomed)

    async def remove_cart_quantities(self, cart_id: str, quantities: Dict[str, int], session=None) -> None:
        for item_id, quantity in quantities.items():
            item = self.cart_items.get(item_id)
            if item is None or item.cart_id != cart_id:
                continue
            if item.quantity > quantity:
                self._patch(self.cart_items, item_id, {"quantity": item.quantity - quantity})
            else:
                del self.cart_items[item_id]

    # Orders
    async def insert_order(self, order: OrderDB, session=None) -> OrderDB:
        if order.payment_intent_id and any(
            o.payment_intent_id == order.payment_intent_id for o in self.orders.values()
        ):
            raise DuplicateError(f"Order already recorded for payment {order.payment_intent_id}")
        return self._store(self.orders, order)

    async def insert_order_item(self, item: OrderItemDB, session=None) -> OrderItemDB:
        return self._store(self.order_items, item)

    async def get_order(self, order_id: str) -> Optional[OrderDB]:
        return self._copy(self.orders.get(order_id))

    async def get_order_by_payment_intent(self, payment_intent_id: str, session=None) -> Optional[OrderDB]:
        return self._copy(next((o for o in self.orders.values() if o.payment_intent_id == payment_intent_id), None))

    async def list_orders(self, user_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[OrderDB]:
        orders = [o for o in self.orders.values() if user_id is None or o.user_id == user_id]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return [self._copy(o) for o in orders[offset:offset + limit]]

    async def list_order_items(self, order_id: str) -> List[OrderItemDB]:
        return [self._copy(i) for i in self.order_items.values() if i.order_id == order_id]

    async def update_order_status(self, order_id: str, status: str, expected_status: Optional[str] = None) -> Optional[OrderDB]:
        order = self.orders.get(order_id)
        if order is None or (expected_status is not None and order.status != expected_status):
            return None
        return self._patch(self.orders, order_id, {"status": status, "updated_at": utcnow()})


def create_storage(config) -> Storage:
    if config.STORAGE_BACKEND == "memory":
        logger.warning("Using in-memory storage; data is lost on restart")
        return MemoryStorage()
    return MongoStorage(get_db_client(config.MONGO_URL), config.MONGO_DB)
