from dataclasses import dataclass, field
from typing import Any, List, Optional

from solders.pubkey import Pubkey

from escrow_marketplace.account_state import TradeAccount, TradeStatus
from escrow_marketplace.tx_builder import PRODUCT_NAME_LEN, U64_MAX, AddressLike, to_pubkey


@dataclass
class TradeParams:
    product_name: str
    product_cost: int
    logistics_costs: List[int]
    logistics_providers: List[AddressLike]
    total_quantity: int


@dataclass
class PurchaseParams:
    trade_id: int
    seller: AddressLike
    quantity: int
    logistics_provider: AddressLike


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _is_u64(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= U64_MAX


def _check_positive(value: Any, label: str, errors: List[str]) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        errors.append(f"{label} must be an integer")
    elif value <= 0:
        errors.append(f"{label} must be greater than 0")
    elif value > U64_MAX:
        errors.append(f"{label} exceeds the u64 range")


def _parse_address(value: Any) -> Optional[Pubkey]:
    try:
        return to_pubkey(value)
    except Exception:  # noqa: BLE001
        return None


def validate_trade_params(params: TradeParams) -> ValidationResult:
    errors: List[str] = []

    name = params.product_name
    if not isinstance(name, str) or not name:
        errors.append("Product name is required")
    elif len(name.encode("utf-8")) > PRODUCT_NAME_LEN:
        errors.append(f"Product name must be at most {PRODUCT_NAME_LEN} bytes")
    elif "\x00" in name:
        errors.append("Product name must not contain NUL characters")

    _check_positive(params.product_cost, "Product cost", errors)
    _check_positive(params.total_quantity, "Total quantity", errors)

    costs = params.logistics_costs if isinstance(params.logistics_costs, (list, tuple)) else None
    providers = params.logistics_providers if isinstance(params.logistics_providers, (list, tuple)) else None
    if not costs or not providers:
        errors.append("At least one logistics provider and cost is required")
    elif len(costs) != len(providers):
        errors.append(
            f"Logistics costs ({len(costs)}) and logistics providers ({len(providers)}) must have the same length"
        )

    for idx, cost in enumerate(costs or []):
        if not _is_u64(cost):
            errors.append(f"Logistics cost #{idx + 1} must be a non-negative integer within u64")

    seen = set()
    for idx, provider in enumerate(providers or []):
        pubkey = _parse_address(provider)
        if pubkey is None:
            errors.append(f"Logistics provider #{idx + 1} is not a valid address")
        elif pubkey in seen:
            errors.append(
                f"Logistics provider {pubkey} is listed more than once; this client requires distinct providers"
            )
        else:
            seen.add(pubkey)

    return ValidationResult(valid=not errors, errors=errors)


def validate_purchase_params(params: PurchaseParams, trade: Optional[TradeAccount] = None) -> ValidationResult:
    """Check a purchase request, against the live trade when one was read."""
    errors: List[str] = []

    if not _is_u64(params.trade_id):
        errors.append("Trade id must be a non-negative integer within u64")
    if _parse_address(params.seller) is None:
        errors.append("Seller is not a valid address")
    _check_positive(params.quantity, "Quantity", errors)
    provider = _parse_address(params.logistics_provider)
    if provider is None:
        errors.append("Logistics provider is not a valid address")

    if trade is None:
        return ValidationResult(valid=not errors, errors=errors)

    if trade.status is not TradeStatus.ACTIVE:
        errors.append(f"Trade {trade.trade_id} is {trade.status.value}")
    if _is_u64(params.quantity) and params.quantity > trade.remaining_quantity:
        errors.append(
            f"Requested quantity {params.quantity} exceeds remaining quantity {trade.remaining_quantity}"
        )
    if provider is not None and provider not in trade.logistics_providers:
        errors.append(f"Logistics provider {provider} is not accepted for trade {trade.trade_id}")

    return ValidationResult(valid=not errors, errors=errors)
