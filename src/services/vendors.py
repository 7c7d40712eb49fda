import threading
from typing import Optional
from loguru import logger

from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.batch import utcnow
from ..models.invoice import Vendor, VendorStatus
from .storage import PipelineRepository


class VendorService:
    """
    Vendor lookup and upsert.

    find_or_create is serialized so two documents naming the same new vendor
    at the same time resolve to one record.
    """

    def __init__(self, repository: PipelineRepository):
        self.repository = repository
        self._lock = threading.Lock()

    def find_or_create(self, name: str) -> Vendor:
        """Exact case-insensitive match, then substring match, then create"""
        name = " ".join((name or "").split())
        if not name:
            raise ValidationError("Vendor name is required")

        with self._lock:
            vendor = self.repository.find_vendor_by_name(name)
            if vendor is not None:
                return vendor

            similar = self.repository.search_vendors(name)
            if similar:
                logger.debug("Vendor matched by substring", name=name, vendor=similar[0].name)
                return similar[0]

            vendor = self.repository.save_vendor(Vendor(name=name))
            logger.info("Vendor created", vendor_id=vendor.id, name=name)
            return vendor

    def create(
        self,
        name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Vendor:
        """
        Register a vendor by hand.

        Raises:
            ValidationError: blank name
            ConflictError: a vendor with the same name (case-insensitive) exists
        """
        name = " ".join((name or "").split())
        if not name:
            raise ValidationError("Vendor name is required")

        with self._lock:
            if self.repository.find_vendor_by_name(name) is not None:
                raise ConflictError(f"Vendor already exists: {name}")
            vendor = self.repository.save_vendor(Vendor(name=name, email=email, phone=phone, address=address))
        logger.info("Vendor created", vendor_id=vendor.id, name=name)
        return vendor

    def update(
        self,
        vendor_id: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Vendor:
        """Update contact details; fields left as None keep their value"""
        with self._lock:
            vendor = self.get_vendor(vendor_id)
            if email is not None:
                vendor.email = email
            if phone is not None:
                vendor.phone = phone
            if address is not None:
                vendor.address = address
            vendor.updated_at = utcnow()
            return self.repository.save_vendor(vendor)

    def record_invoice(self, vendor_id: str) -> Vendor:
        with self._lock:
            vendor = self.get_vendor(vendor_id)
            vendor.invoice_count += 1
            vendor.updated_at = utcnow()
            return self.repository.save_vendor(vendor)

    def get_vendor(self, vendor_id: str) -> Vendor:
        vendor = self.repository.get_vendor(vendor_id)
        if vendor is None:
            raise NotFoundError("vendor", vendor_id)
        return vendor

    def list_vendors(self, status: Optional[VendorStatus] = None) -> list[Vendor]:
        vendors = self.repository.list_vendors()
        if status is not None:
            vendors = [v for v in vendors if v.status == status]
        return vendors

    def count_vendors(self, status: Optional[VendorStatus] = None) -> int:
        return len(self.list_vendors(status))

    def search_vendors(self, fragment: str) -> list[Vendor]:
        if not fragment or not fragment.strip():
            return []
        return self.repository.search_vendors(fragment.strip())

    def set_status(self, vendor_id: str, status: VendorStatus) -> Vendor:
        with self._lock:
            vendor = self.get_vendor(vendor_id)
            vendor.status = status
            vendor.updated_at = utcnow()
            logger.info("Vendor status changed", vendor_id=vendor_id, status=status.value)
            return self.repository.save_vendor(vendor)
