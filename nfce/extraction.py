"""
Invoice extraction from the SEFAZ-BA "Visualizar em Abas" pages.

PAGE LAYOUT (verified against saved portal pages):
- Each tab lives in a container div: #NFe (header data), #Prod (items).
- A tab is a flat run of <table>s. A table whose first
  td.table-titulo-aba / td.table-titulo-aba-interna cell has text opens a
  section ("Emitente", "Dados da NFC-e", ...); following tables hold
  <label>Name</label> ... <span>Value</span> pairs for that section.
- Each product is a td.table_produtos with a summary table.toggle and a
  detail table.toggable. Inside the detail, tax families (ICMS, PIS,
  COFINS) are titled sub-tables followed by the table (or a div wrapping
  it) with their values.

PARSING POLICY:
- Missing optional fields become "" / 0. Only a missing tab container is
  an error (StructureNotFoundError).
- Numbers use Brazilian notation: "." thousands, "," decimals.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from bs4 import BeautifulSoup, Tag

from nfce.errors import StructureNotFoundError
from nfce.models import Address, Consumer, Issuer, Item, Portal, Receipt, Taxes, Unit
from nfce.money import from_float, parse_brl_or_zero

logger = logging.getLogger(__name__)

SECTION_TITLE_SELECTOR = "td.table-titulo-aba, td.table-titulo-aba-interna"
TAX_TITLE_SELECTOR = "td.table-titulo-aba-interna"

SECTION_DADOS = "Dados da NFC-e"
SECTION_EMITENTE = "Emitente"
SECTION_DESTINATARIO = "Destinatário"

_DATE_FORMATS = ("%d/%m/%Y %H:%M:%S%z", "%d/%m/%Y %H:%M:%S", "%d/%m/%Y")

_UNITS = {
    "KG": Unit.KILOGRAM,
    "G": Unit.GRAM,
    "L": Unit.LITER,
    "UN": Unit.UNIT,
    "UND": Unit.UNIT,
    "UNID": Unit.UNIT,
    "M": Unit.METER,
}


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def normalize_text(s: str) -> str:
    """Replace NBSP, trim, and collapse whitespace runs to one space."""
    return " ".join((s or "").replace("\u00a0", " ").split())


def digits(s: str) -> str:
    return re.sub(r"\D", "", s or "")


def first_non_empty(*values: str | None) -> str:
    for v in values:
        if v and v.strip():
            return v
    return ""


def parse_quantity(s: str) -> float:
    """Parse "1.234,567" as 1234.567; malformed input gives 0.0."""
    s = (s or "").replace(".", "").replace(",", ".").strip()
    if not s:
        return 0.0
    try:
        return float(s)
    except ValueError:
        return 0.0


def parse_percent(s: str) -> float:
    return parse_quantity((s or "").replace("%", ""))


def parse_int(s: str) -> int:
    try:
        return int((s or "").strip())
    except ValueError:
        return 0


def parse_br_date(s: str) -> datetime | None:
    """Parse dd/mm/YYYY dates with optional time and UTC offset."""
    s = normalize_text(s)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None


def normalize_unit(s: str) -> str:
    """Map known unit abbreviations to canonical tokens; keep the rest."""
    s = (s or "").strip().upper()
    unit = _UNITS.get(s)
    return unit.value if unit else s


# ---------------------------------------------------------------------------
# Label/value walking
# ---------------------------------------------------------------------------

def _text(node: Tag | None) -> str:
    if node is None:
        return ""
    return normalize_text(node.get_text())


def collect_label_values(node: Tag | None) -> dict[str, str]:
    """Pair every <label> under ``node`` with its next <span> sibling.

    Walks child elements recursively. Empty labels or values are skipped and
    the first value seen for a label wins.
    """
    values: dict[str, str] = {}
    if node is None:
        return values

    def walk(parent: Tag) -> None:
        for child in parent.find_all(True, recursive=False):
            if child.name == "label":
                label = _text(child)
                value = _text(child.find_next_sibling("span"))
                if label and value and label not in values:
                    values[label] = value
            walk(child)

    walk(node)
    return values


class SectionIndex(dict):
    """Section title -> {label -> value}."""

    def first_value(self, label: str) -> str:
        """Value of ``label`` in the first section (document order) that has one."""
        label = normalize_text(label)
        for section in self.values():
            value = section.get(label, "").strip()
            if value:
                return value
        return ""

    def section(self, title: str) -> dict[str, str]:
        return self.get(title, {})


def _section_title(table: Tag) -> str:
    return _text(table.select_one(SECTION_TITLE_SELECTOR))


def build_section_index(root: Tag) -> SectionIndex:
    """Index label/value pairs of every table under ``root`` by section.

    Tables are scanned in document order; a titled table opens a section and
    later tables feed it until the next title. Tables before the first title
    are ignored.
    """
    sections = SectionIndex()
    current = ""

    for table in root.find_all("table"):
        title = _section_title(table)
        if title:
            current = title
            sections.setdefault(current, {})
            continue

        if not current:
            continue

        target = sections[current]
        for label, value in collect_label_values(table).items():
            if label not in target:
                target[label] = value

    return sections


def _require(soup: BeautifulSoup, element_id: str) -> Tag:
    node = soup.find(id=element_id)
    if node is None:
        raise StructureNotFoundError(f"#{element_id} container not found")
    return node


# ---------------------------------------------------------------------------
# NFe tab: header data
# ---------------------------------------------------------------------------

def parse_nfe_tab(page: str | bytes) -> Receipt:
    """Parse the NFe tab into a Receipt without items."""
    soup = BeautifulSoup(page, "html.parser")
    nfe = _require(soup, "NFe")

    sections = build_section_index(nfe)
    dados = sections.section(SECTION_DADOS)
    emitente = sections.section(SECTION_EMITENTE)
    destinatario = sections.section(SECTION_DESTINATARIO)

    total = parse_brl_or_zero(
        first_non_empty(
            sections.first_value("Valor Total da Nota Fiscal"),
            sections.first_value("Valor Total"),
        )
    )
    products_total = sections.first_value("Valor Total dos Produtos")
    subtotal = parse_brl_or_zero(products_total) if products_total else total

    key = digits(_text(soup.find(id="lbl_chave_acesso"))) or digits(
        sections.first_value("Chave de Acesso")
    )

    receipt = Receipt(
        key=key,
        portal=Portal.BA,
        series=dados.get("Série", "").strip(),
        number=dados.get("Número", "").strip(),
        issue_date=parse_br_date(dados.get("Data de Emissão", "")),
        issuer=Issuer(
            name=emitente.get("Nome / Razão Social", "").strip(),
            cnpj=digits(emitente.get("CNPJ", "")),
            trade_name=emitente.get("Nome Fantasia", "").strip(),
            state_reg_id=digits(emitente.get("Inscrição Estadual", "")),
            address=Address(
                state=emitente.get("UF", "").strip(),
                city=emitente.get("Município", "").strip(),
            ),
        ),
        consumer=Consumer(
            document=digits(first_non_empty(destinatario.get("CPF"), destinatario.get("CNPJ"))),
            name=first_non_empty(
                destinatario.get("Nome"), destinatario.get("Nome / Razão Social")
            ).strip(),
        ),
        subtotal=subtotal,
        discount=parse_brl_or_zero(sections.first_value("Valor do Desconto")),
        total=total,
    )

    if receipt.issue_date is None and dados.get("Data de Emissão"):
        logger.warning("Unparseable issue date: %r", dados["Data de Emissão"])

    return receipt


# ---------------------------------------------------------------------------
# Products tab: items and taxes
# ---------------------------------------------------------------------------

def parse_products_tab(page: str | bytes) -> list[Item]:
    """Parse the Produtos/Serviços tab into line items."""
    soup = BeautifulSoup(page, "html.parser")
    prod = _require(soup, "Prod")

    items: list[Item] = []
    for td in prod.select("td.table_produtos"):
        summary = td.select_one("table.toggle")
        if summary is None:
            continue
        detail = td.select_one("table.toggable")
        items.append(_parse_item(collect_label_values(summary), detail))

    return items


def _parse_item(summary: dict[str, str], detail: Tag | None) -> Item:
    details = collect_label_values(detail)

    item = Item(
        line_number=parse_int(summary.get("Número", "")),
        description=summary.get("Descrição", ""),
        code=details.get("Código do Produto", ""),
        quantity=parse_quantity(
            first_non_empty(
                summary.get("Qtd."),
                details.get("Quantidade Comercial"),
                details.get("Quantidade Tributável"),
            )
        ),
        unit=normalize_unit(
            first_non_empty(
                summary.get("Unidade Comercial"),
                details.get("Unidade Comercial"),
                details.get("Unidade Tributável"),
            )
        ),
        total=parse_brl_or_zero(first_non_empty(summary.get("Valor (R$)"), details.get("Valor Total"))),
        ncm=details.get("Código NCM", ""),
        cest=details.get("Código CEST", ""),
        cfop=details.get("CFOP", ""),
    )

    gtin = first_non_empty(details.get("Código EAN Comercial"), details.get("Código EAN Tributável"))
    if gtin and gtin.strip().upper() != "SEM GTIN":
        item.gtin = digits(gtin)

    unit_price = first_non_empty(
        details.get("Valor unitário de comercialização"),
        details.get("Valor unitário de tributação"),
    )
    item.unit_price = parse_brl_or_zero(unit_price)
    if item.unit_price == 0 and item.quantity > 0 and item.total:
        item.unit_price = from_float(item.total / 100 / item.quantity)

    item.taxes = parse_taxes(detail, details)
    return item


def find_tax_section(detail: Tag | None, family: str) -> dict[str, str]:
    """Label/values of the tax block titled ``family`` (e.g. "PIS").

    From the title cell's table, walk forward through siblings to the next
    table or div; a div is searched for its first table. Returns {} when the
    invoice does not carry that tax.
    """
    if detail is None:
        return {}

    family = family.upper()
    title = next(
        (td for td in detail.select(TAX_TITLE_SELECTOR) if family in td.get_text().upper()),
        None,
    )
    if title is None:
        return {}

    title_table = title.find_parent("table")
    if title_table is None:
        return {}

    block = title_table.find_next_sibling(["table", "div"])
    if block is not None and block.name == "div":
        block = block.find("table")
    if block is None:
        return {}

    return collect_label_values(block)


def _tax_rate_and_amount(detail: Tag | None, family: str) -> tuple[float, int]:
    vals = find_tax_section(detail, family)
    percent = parse_percent(first_non_empty(vals.get("Alíquota"), vals.get("Alíquota do ICMS Normal")))
    return percent, parse_brl_or_zero(vals.get("Valor", ""))


def parse_taxes(detail: Tag | None, details: dict[str, str]) -> Taxes | None:
    """Tax breakdown for one item, or None when it carries no tax data."""
    approximate = parse_brl_or_zero(details.get("Valor Aproximado dos Tributos", ""))

    icms_percent = parse_percent(
        first_non_empty(
            details.get("Alíquota do ICMS Normal"),
            details.get("Alíquota do ICMS"),
            details.get("Alíquota do ICMS ST"),
        )
    )
    icms_value = parse_brl_or_zero(
        first_non_empty(
            details.get("Valor do ICMS Normal"),
            details.get("Valor do ICMS ST retido"),
            details.get("Valor do ICMS ST"),
        )
    )

    pis_percent, pis_value = _tax_rate_and_amount(detail, "PIS")
    cofins_percent, cofins_value = _tax_rate_and_amount(detail, "COFINS")

    amount = approximate + icms_value + pis_value + cofins_value
    if not (icms_percent or pis_percent or cofins_percent or amount):
        return None

    return Taxes(
        icms_percent=icms_percent,
        pis_percent=pis_percent,
        cofins_percent=cofins_percent,
        amount=amount,
    )
