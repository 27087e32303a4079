"""Cart manifest — the cart as it travels through Stripe metadata.

Setup-mode sessions carry no line items, so the metadata is the only
place the cart survives between checkout creation and reconciliation.
The manifest is one validated JSON document split across
`cart_manifest_<n>` keys (Stripe caps each metadata value at 500
characters). decode() also understands the older positional scheme
(`item_<i>_product_id`, `item_<i>_quantity`, `item_<i>_<field>`) and the
single-product `product_id` key, so sessions created before the
manifest existed still reconcile.
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from app.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_LINES = 10
METADATA_VALUE_LIMIT = 500
# Stripe allows 50 keys per object; the session also carries user_id,
# pending_order_id and pending_order_item_id.
METADATA_KEY_BUDGET = 47
MANIFEST_PREFIX = "cart_manifest_"
MANIFEST_PARTS_KEY = "cart_manifest_parts"


class CustomerDetails(BaseModel):
    """Fulfillment details for products that need an install address."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    first_name: Optional[str] = Field(None, alias="firstName", max_length=255)
    last_name: Optional[str] = Field(None, alias="lastName", max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=255)
    state: Optional[str] = Field(None, max_length=100)
    postcode: Optional[str] = Field(None, max_length=20)

    def to_purchase_columns(self):
        """Map to Purchase.customer_* columns, dropping empty values."""
        return {
            f"customer_{name}": value
            for name, value in self.model_dump().items()
            if value
        }

    def is_empty(self):
        return not any(self.model_dump().values())


class CartLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_id: str = Field(..., alias="productId", min_length=1, max_length=64)
    quantity: int = Field(1, ge=1, le=100)
    customer_details: Optional[CustomerDetails] = Field(None, alias="customerDetails")


class CartManifest(BaseModel):
    lines: List[CartLine] = Field(..., min_length=1, max_length=MAX_LINES)

    def product_ids(self):
        return [line.product_id for line in self.lines]

    def find_line(self, product_id):
        """Index of the first line for `product_id`, or None."""
        for index, line in enumerate(self.lines):
            if line.product_id == product_id:
                return index
        return None

    # ── Encoding ──

    def to_metadata(self):
        """Metadata entries for a Checkout Session.

        Compact JSON split into 500-char chunks, plus positional
        product/quantity keys for anyone reading the session in the
        Stripe dashboard. The positional keys are left out when they
        would push the session past METADATA_KEY_BUDGET; decode() only
        needs the chunks.

        Raises ValidationError when the chunks alone do not fit.
        """
        payload = self.model_dump_json(exclude_none=True)
        chunks = [
            payload[i:i + METADATA_VALUE_LIMIT]
            for i in range(0, len(payload), METADATA_VALUE_LIMIT)
        ]
        metadata = {MANIFEST_PARTS_KEY: str(len(chunks))}
        for n, chunk in enumerate(chunks):
            metadata[f"{MANIFEST_PREFIX}{n}"] = chunk

        if len(metadata) > METADATA_KEY_BUDGET:
            raise ValidationError("Cart details are too large for checkout")

        if len(metadata) + 1 + 2 * len(self.lines) <= METADATA_KEY_BUDGET:
            metadata["item_count"] = str(len(self.lines))
            for i, line in enumerate(self.lines):
                metadata[f"item_{i}_product_id"] = line.product_id
                metadata[f"item_{i}_quantity"] = str(line.quantity)
        return metadata


# Positional detail keys, both spellings seen in older sessions.
_LEGACY_DETAIL_KEYS = {
    "first_name": ("first_name", "firstName"),
    "last_name": ("last_name", "lastName"),
    "email": ("email",),
    "phone": ("phone",),
    "address": ("address",),
    "city": ("city",),
    "state": ("state",),
    "postcode": ("postcode",),
}


def _legacy_details(metadata, prefix):
    details = {}
    for field, suffixes in _LEGACY_DETAIL_KEYS.items():
        for suffix in suffixes:
            value = metadata.get(f"{prefix}{suffix}")
            if value:
                details[field] = value
                break
    return details or None


def _decode_legacy(metadata):
    lines = []
    count = int(metadata.get("item_count") or 0)
    for i in range(min(count, MAX_LINES)):
        product_id = metadata.get(f"item_{i}_product_id")
        if not product_id:
            continue
        lines.append({
            "product_id": product_id,
            "quantity": int(metadata.get(f"item_{i}_quantity") or 1),
            "customer_details": _legacy_details(metadata, f"item_{i}_"),
        })

    if not lines and metadata.get("product_id"):
        lines.append({
            "product_id": metadata["product_id"],
            "quantity": int(metadata.get("quantity") or 1),
            "customer_details": _legacy_details(metadata, "customer_"),
        })
    return lines


def decode(metadata):
    """Rebuild the CartManifest from session (or subscription) metadata.

    Returns None when the metadata carries no cart at all.
    Raises ValidationError when a manifest is present but malformed.
    """
    metadata = metadata or {}
    try:
        if MANIFEST_PARTS_KEY in metadata:
            parts = int(metadata[MANIFEST_PARTS_KEY])
            payload = "".join(
                metadata.get(f"{MANIFEST_PREFIX}{n}", "") for n in range(parts)
            )
            return CartManifest.model_validate_json(payload)

        lines = _decode_legacy(metadata)
        if not lines:
            return None
        return CartManifest.model_validate({"lines": lines})
    except (PydanticValidationError, ValueError) as e:
        logger.error(f"Unreadable cart manifest in metadata: {e}")
        raise ValidationError("Checkout metadata is malformed") from e


def parse_lines(raw_items):
    """Validate request-body items into a CartManifest.

    Raises ValidationError with the first problem found, including a
    cart whose encoded manifest would not fit in session metadata.
    """
    if not raw_items:
        raise ValidationError("At least one item is required")
    try:
        manifest = CartManifest.model_validate({"lines": raw_items})
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"Invalid item ({location}): {first['msg']}") from e
    manifest.to_metadata()
    return manifest
