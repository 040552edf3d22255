from __future__ import annotations

import math
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from salesync.common.date_utils import get_timezone, localize

DEFAULT_STORE = "Todas"
DEFAULT_PRODUCT = "Geral"
DEFAULT_STATE = "Não informado"
NOT_INFORMED = "Não informado"
CANCELED_MARKER = "cancelado"

SaleChannel = Literal["online", "atacado", "manual"]

EXCEL_EPOCH = datetime(1899, 12, 30)
_BR_DATETIME_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})(?:\s+(\d{1,2}):(\d{2})(?::(\d{2}))?)?$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_WHITESPACE_RE = re.compile(r"\s+")


COLUMN_ALIASES: Dict[str, Tuple[str, ...]] = {
    "date": ("date", "data", "dt_venda", "data venda", "hora do pedido"),
    "order_id": ("nº de pedido", "nº do pedido", "numero do pedido"),
    "store": ("store", "loja", "filial", "nome da loja no upseller"),
    "product": ("product", "produto", "item"),
    "ad_name": ("nome do anúncio", "nome do anuncio", "anuncio"),
    "variation": ("variação", "variacao"),
    "sku": ("sku",),
    "quantity": (
        "quantity",
        "quantidade",
        "qtd",
        "qtde",
        "total de pedidos",
        "pedidos válidos",
        "pedidos validos",
        "qtd. do produto",
    ),
    "total": (
        "total",
        "valor",
        "valor_total",
        "total venda",
        "total_venda",
        "receita",
        "valor total de vendas",
        "valor de vendas válidas",
        "valor de vendas validas",
        "valor do pedido",
        "valor total de produtos",
    ),
    "state": ("estado",),
    "platform": ("plataformas",),
    "status": ("pós-venda/cancelado/devolvido",),
    "cancel_by": ("cancelado por", "cancelado_por"),
    "cancel_reason": ("razão do cancelamento", "razao do cancelamento"),
    "image": ("link da imagem",),
    "unit_price": (
        "preço do produto",
        "preco do produto",
        "preço",
        "preco",
        "valor do produto",
        "valor unitário",
        "valor unitario",
        "preço unitário",
        "preco unitario",
        "valor un",
        "preço un",
        "preco un",
    ),
    "client_name": (
        "nome de comprador",
        "nome do comprador",
        "comprador",
        "cliente",
        "nome do cliente",
    ),
    "codcli": (
        "id do comprador",
        "id comprador",
        "codigo do cliente",
        "codigo cliente",
        "codcli",
    ),
}

REQUIRED_COLUMNS = ("date", "total")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_label(value: Any) -> str:
    """Accent-stripped, whitespace-collapsed, lower-cased form used for matching."""

    text = "" if value is None else str(value)
    return _WHITESPACE_RE.sub(" ", strip_accents(text)).strip().lower()


def is_canceled_status(status: Any) -> bool:
    return CANCELED_MARKER in normalize_label(status)


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def parse_number(value: Any) -> Optional[float]:
    """Parse a number written in either ``1.234,56`` or ``1234.56`` style."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return None if math.isnan(number) or math.isinf(number) else number
    raw = str(value).strip().replace("R$", "").replace(" ", "")
    if not raw:
        return None
    if "," in raw:
        raw = raw.replace(".", "").replace(",", ".")
    try:
        number = float(raw)
    except ValueError:
        return None
    return None if math.isnan(number) or math.isinf(number) else number


def parse_date(value: Any, tz: ZoneInfo | None = None) -> Optional[datetime]:
    """Parse a sale date; returns an aware datetime or ``None`` when unparsable.

    Accepted forms, in order: datetime/date objects, Excel serial numbers,
    ``DD/MM/YYYY[ HH:mm[:ss]]``, ISO ``YYYY-MM-DD`` (optionally with a time),
    then anything ``dateutil`` understands (day-first).
    """

    zone = tz or get_timezone()
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return localize(value, zone)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=zone)
    if isinstance(value, (int, float, Decimal)):
        serial = float(value)
        if math.isnan(serial) or serial <= 0:
            return None
        try:
            return localize(EXCEL_EPOCH + timedelta(days=serial), zone)
        except OverflowError:
            return None

    raw = str(value).strip()
    if not raw:
        return None

    match = _BR_DATETIME_RE.match(raw)
    if match:
        day, month, year, hour, minute, second = match.groups()
        try:
            parsed = datetime(
                int(year), int(month), int(day), int(hour or 0), int(minute or 0), int(second or 0)
            )
        except ValueError:
            return None
        return localize(parsed, zone)

    if _ISO_DATE_RE.match(raw):
        try:
            return datetime.combine(date.fromisoformat(raw), time.min, tzinfo=zone)
        except ValueError:
            return None

    try:
        return localize(datetime.fromisoformat(raw), zone)
    except ValueError:
        pass
    try:
        return localize(date_parser.parse(raw, dayfirst=True), zone)
    except (ValueError, OverflowError):
        return None


def split_variation_and_size(variation: Any, sku: Any = None, ad_name: Any = None) -> Tuple[str, str]:
    """Split a raw variation/SKU into ``(variation, size)``.

    Rules are tried in order:
    1. ``"Azul, M"`` -> comma separates attribute and size.
    2. ``"CAM-AZUL-M"`` -> at least three dash parts, second and third are used.
    3. SKU prefixed with ``<ad name>-`` -> the remainder is ``variation-size``.
    4. SKU with two or more dash parts -> the last two parts.
    5. Otherwise the raw variation with an uninformed size.
    """

    raw_variation = _clean_text(variation)
    if "," in raw_variation:
        attr, _, size = raw_variation.partition(",")
        size = size.split(",")[0]
        return attr.strip() or NOT_INFORMED, size.strip() or NOT_INFORMED

    if "-" in raw_variation:
        parts = raw_variation.split("-")
        if len(parts) >= 3:
            return parts[1] or NOT_INFORMED, parts[2] or NOT_INFORMED

    name = _clean_text(ad_name)
    raw_sku = _clean_text(sku)
    if raw_sku and name and raw_sku.startswith(f"{name}-"):
        parts = [part for part in raw_sku[len(name) + 1 :].split("-") if part]
        variation_part = parts[0] if parts else ""
        size_part = parts[1] if len(parts) > 1 else ""
        return variation_part or NOT_INFORMED, size_part or NOT_INFORMED

    if raw_sku:
        parts = [part for part in raw_sku.split("-") if part]
        if len(parts) >= 2:
            return parts[-2] or NOT_INFORMED, parts[-1] or NOT_INFORMED

    return raw_variation or NOT_INFORMED, NOT_INFORMED


def variation_from_sku(sku: Any, ad_name: Any = None) -> str:
    """Ledger variation (``"Azul, M"``) recovered from a SKU, or ``""`` when it carries none."""

    variation, size = split_variation_and_size("", sku, ad_name)
    if variation == NOT_INFORMED:
        return ""
    return variation if size == NOT_INFORMED else f"{variation}, {size}"


class SaleRecord(BaseModel):
    """One canonical ledger line, independent of the source it came from."""

    model_config = ConfigDict(extra="ignore", arbitrary_types_allowed=True)

    order_id: str = ""
    date: datetime
    store: str = DEFAULT_STORE
    product: str = DEFAULT_PRODUCT
    ad_name: Optional[str] = None
    variation: str = ""
    sku: Optional[str] = None
    quantity: float = 1.0
    total: float
    unit_price: Optional[float] = None
    state: str = DEFAULT_STATE
    platform: Optional[str] = None
    status: Optional[str] = None
    cancel_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    image: Optional[str] = None
    client_name: Optional[str] = None
    codcli: Optional[str] = None
    nome_fantasia: Optional[str] = None
    cnpj_cpf: Optional[str] = None
    sale_channel: SaleChannel = "online"

    @model_validator(mode="before")
    @classmethod
    def _apply_defaults(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        values = dict(data)
        for key, default in (("store", DEFAULT_STORE), ("product", DEFAULT_PRODUCT), ("state", DEFAULT_STATE)):
            if not _clean_text(values.get(key)):
                values[key] = default
        for key in ("order_id", "variation"):
            values[key] = _clean_text(values.get(key))
        if values.get("quantity") is None:
            values["quantity"] = 1.0
        return values

    @field_validator(
        "store",
        "product",
        "ad_name",
        "sku",
        "state",
        "platform",
        "status",
        "cancel_by",
        "cancel_reason",
        "image",
        "client_name",
        "codcli",
        "nome_fantasia",
        "cnpj_cpf",
        mode="before",
    )
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        if value is None:
            return None
        return _clean_text(value)

    @field_validator("date")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        return localize(value)

    @field_validator("quantity")
    @classmethod
    def _positive_quantity(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("quantity must be positive")
        return value

    @model_validator(mode="after")
    def _derive_unit_price(self) -> "SaleRecord":
        if self.unit_price is None or self.unit_price <= 0:
            self.unit_price = round(self.total / self.quantity, 2) if self.total > 0 else 0.0
        return self

    @property
    def ledger_key(self) -> Tuple[str, str, str]:
        return (self.order_id or "", self.product, self.variation or "")

    @property
    def is_canceled(self) -> bool:
        return is_canceled_status(self.status)

    def to_row(self, channel: str | None = None) -> Dict[str, Any]:
        return {
            "order_id": self.order_id or "",
            "date": self.date,
            "store": self.store or DEFAULT_STORE,
            "product": self.product or DEFAULT_PRODUCT,
            "ad_name": self.ad_name or self.product or DEFAULT_PRODUCT,
            "variation": self.variation or "",
            "sku": self.sku or "",
            "quantity": self.quantity,
            "total": self.total,
            "unit_price": self.unit_price or 0.0,
            "state": self.state or DEFAULT_STATE,
            "platform": self.platform or "",
            "status": self.status or "",
            "cancel_by": self.cancel_by or "",
            "cancel_reason": self.cancel_reason or "",
            "image": self.image or "",
            "client_name": self.client_name or "",
            "codcli": self.codcli or "",
            "nome_fantasia": self.nome_fantasia or "",
            "cnpj_cpf": self.cnpj_cpf or "",
            "sale_channel": channel or self.sale_channel,
        }


def build_record(values: Mapping[str, Any]) -> SaleRecord:
    """Validate ``values`` into a ``SaleRecord``; raises ``ValueError`` with a readable reason."""

    try:
        return SaleRecord(**values)
    except ValidationError as err:
        reasons = "; ".join(
            f"{'.'.join(str(part) for part in issue['loc']) or 'record'}: {issue['msg']}"
            for issue in err.errors()
        )
        raise ValueError(reasons) from err


@dataclass(frozen=True)
class RejectedRow:
    index: int
    reason: str


@dataclass
class NormalizationResult:
    records: List[SaleRecord] = field(default_factory=list)
    rejected: List[RejectedRow] = field(default_factory=list)
    missing_columns: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_columns


def resolve_header_map(headers: Iterable[Any]) -> Dict[str, str]:
    """Map canonical field names to the actual header found in a sheet."""

    by_label: Dict[str, str] = {}
    for header in headers:
        if header is None:
            continue
        by_label.setdefault(normalize_label(header), str(header))

    resolved: Dict[str, str] = {}
    for canonical, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            header = by_label.get(normalize_label(alias))
            if header is not None:
                resolved[canonical] = header
                break
    return resolved


def normalize_rows(
    rows: List[Mapping[str, Any]],
    *,
    channel: SaleChannel = "online",
    tz: ZoneInfo | None = None,
    first_row_number: int = 2,
) -> NormalizationResult:
    """Normalize spreadsheet-shaped rows (header -> cell) into sale records.

    Row numbers in rejections start at ``first_row_number`` so they match the
    line a user sees in the spreadsheet (header on line 1).
    """

    result = NormalizationResult()
    if not rows:
        return result

    header_map = resolve_header_map(rows[0].keys())
    result.missing_columns = [column for column in REQUIRED_COLUMNS if column not in header_map]
    if result.missing_columns:
        return result

    def cell(row: Mapping[str, Any], key: str, default: Any = "") -> Any:
        header = header_map.get(key)
        if header is None:
            return default
        value = row.get(header)
        return default if value is None else value

    for offset, row in enumerate(rows):
        row_number = offset + first_row_number
        parsed_date = parse_date(cell(row, "date", None), tz)
        if parsed_date is None:
            result.rejected.append(RejectedRow(row_number, "Data inválida"))
            continue
        total = parse_number(cell(row, "total", None))
        if total is None:
            result.rejected.append(RejectedRow(row_number, "Total inválido"))
            continue
        raw_quantity = cell(row, "quantity", 1)
        quantity = parse_number(raw_quantity) if _clean_text(raw_quantity) else 1.0
        if quantity is None:
            result.rejected.append(RejectedRow(row_number, "Quantidade inválida"))
            continue

        product = _clean_text(cell(row, "product"))
        ad_name = _clean_text(cell(row, "ad_name"))
        variation = _clean_text(cell(row, "variation")) or variation_from_sku(cell(row, "sku"), ad_name or product)
        try:
            record = build_record(
                {
                    "order_id": cell(row, "order_id"),
                    "date": parsed_date,
                    "store": cell(row, "store", DEFAULT_STORE),
                    "product": product or ad_name or DEFAULT_PRODUCT,
                    "ad_name": ad_name or product or DEFAULT_PRODUCT,
                    "variation": variation,
                    "sku": cell(row, "sku"),
                    "quantity": quantity,
                    "total": total,
                    "unit_price": parse_number(cell(row, "unit_price", None)),
                    "state": cell(row, "state"),
                    "platform": cell(row, "platform"),
                    "status": cell(row, "status"),
                    "cancel_by": cell(row, "cancel_by"),
                    "cancel_reason": cell(row, "cancel_reason"),
                    "image": cell(row, "image"),
                    "client_name": cell(row, "client_name"),
                    "codcli": cell(row, "codcli"),
                    "sale_channel": channel,
                }
            )
        except ValueError as exc:
            result.rejected.append(RejectedRow(row_number, str(exc)))
            continue
        result.records.append(record)
    return result


def dedupe_by_ledger_key(records: Iterable[SaleRecord]) -> List[SaleRecord]:
    """Collapse records sharing a ledger key; the last occurrence wins."""

    by_key: Dict[Tuple[str, str, str], SaleRecord] = {}
    for record in records:
        key = record.ledger_key
        by_key.pop(key, None)
        by_key[key] = record
    return list(by_key.values())
