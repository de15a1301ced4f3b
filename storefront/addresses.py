import logging
from typing import Any, Dict, List, Optional

from shared.utils import NotFoundException, OwnershipError
from storefront.models import AddressDB, ShippingAddress
from storefront.storage import Storage

logger = logging.getLogger(__name__)


class AddressBook:
    """
    A user's saved shipping addresses. At most one is the default; the first
    address a user saves becomes it, and deleting the default promotes the
    newest remaining address.
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    async def list(self, user_id: str) -> List[AddressDB]:
        return await self.storage.list_addresses(user_id)

    async def get_default(self, user_id: str) -> AddressDB:
        addresses = await self.storage.list_addresses(user_id)
        if not addresses or not addresses[0].is_default:
            raise NotFoundException("No default address found")
        return addresses[0]

    async def _owned(self, user_id: str, address_id: str, session=None) -> AddressDB:
        address = await self.storage.get_address(address_id, session=session)
        if address is None or address.user_id != user_id:
            raise OwnershipError("Address not found")
        return address

    async def get(self, user_id: str, address_id: str) -> AddressDB:
        return await self._owned(user_id, address_id)

    async def add(self, user_id: str, fields: Dict[str, Any]) -> AddressDB:
        make_default = fields.pop("is_default", False)
        async with self.storage.transaction() as session:
            if not make_default and not await self.storage.list_addresses(user_id, session=session):
                make_default = True
            if make_default:
                await self.storage.clear_default_address(user_id, session=session)
            address = await self.storage.create_address(
                AddressDB(user_id=user_id, is_default=make_default, **fields), session=session
            )
        logger.info("Address added", extra={"user_id": user_id})
        return address

    async def update(self, user_id: str, address_id: str, fields: Dict[str, Any]) -> AddressDB:
        make_default = fields.pop("is_default", None)
        async with self.storage.transaction() as session:
            await self._owned(user_id, address_id, session=session)
            if make_default:
                await self.storage.clear_default_address(user_id, session=session)
                fields["is_default"] = True
            updated = await self.storage.update_address(address_id, fields, session=session)
        if updated is None:
            raise OwnershipError("Address not found")
        return updated

    async def set_default(self, user_id: str, address_id: str) -> AddressDB:
        return await self.update(user_id, address_id, {"is_default": True})

    async def remove(self, user_id: str, address_id: str) -> None:
        async with self.storage.transaction() as session:
            address = await self._owned(user_id, address_id, session=session)
            await self.storage.delete_address(address.id, session=session)
            if address.is_default:
                remaining = await self.storage.list_addresses(user_id, session=session)
                if remaining:
                    await self.storage.update_address(remaining[0].id, {"is_default": True}, session=session)
        logger.info("Address removed", extra={"user_id": user_id})

    async def shipping_address(self, user_id: str, address_id: Optional[str]) -> Optional[ShippingAddress]:
        if address_id is None:
            return None
        return (await self._owned(user_id, address_id)).to_shipping_address()
