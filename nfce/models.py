"""Invoice records produced by the extraction engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum


class Portal(str, Enum):
    BA = "BA"


class Unit(str, Enum):
    KILOGRAM = "KG"
    GRAM = "G"
    LITER = "L"
    UNIT = "UN"
    METER = "M"


@dataclass
class Address:
    street: str = ""
    number: str = ""
    district: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""


@dataclass
class Issuer:
    name: str = ""
    cnpj: str = ""
    trade_name: str = ""
    state_reg_id: str = ""
    address: Address = field(default_factory=Address)


@dataclass
class Consumer:
    """CPF (11 digits) or CNPJ (14 digits); both empty for anonymous sales."""
    document: str = ""
    name: str = ""


@dataclass
class Taxes:
    """Per-item tax breakdown. Rates in percent, ``amount`` in cents."""
    icms_percent: float = 0.0
    pis_percent: float = 0.0
    cofins_percent: float = 0.0
    amount: int = 0


@dataclass
class Item:
    line_number: int = 0
    description: str = ""
    code: str = ""
    quantity: float = 0.0
    unit: str = ""
    unit_price: int = 0
    total: int = 0
    ncm: str = ""
    gtin: str = ""
    cfop: str = ""
    cest: str = ""
    taxes: Taxes | None = None


@dataclass
class Receipt:
    """One NFC-e. Money fields are integer cents."""
    key: str = ""
    portal: Portal = Portal.BA
    series: str = ""
    number: str = ""
    issue_date: datetime | None = None
    issuer: Issuer = field(default_factory=Issuer)
    consumer: Consumer = field(default_factory=Consumer)
    items: list[Item] = field(default_factory=list)
    subtotal: int = 0
    discount: int = 0
    total: int = 0

    def to_dict(self) -> dict:
        """JSON-ready dict (dates as ISO 8601, enums as plain strings)."""
        data = asdict(self)
        data["portal"] = self.portal.value
        data["issue_date"] = self.issue_date.isoformat() if self.issue_date else None
        return data
