"""
Extraction phase: invoice images to raw line items.

Each image chunk (a vertical slice of one invoice) is sent to a vision
model with a prompt asking for a strict pipe table. The prompt carries
a vocabulary hint built from the catalog, biased toward entries that
OCR tends to misread, and optionally the rows a user flagged as wrong
on a previous run.

Chunks are processed one after another and their rows concatenated in
chunk order.
"""

import json
from typing import Optional, Sequence

import structlog

from config import get_settings
from integrations import ProviderRouter, get_provider_router
from models.catalog import ProductRecord
from models.invoice import FeedbackSet, RawLineItem
from models.provider import ProviderConfig
from services.retry_service import RetryPolicy
from utils.json_utils import decode_json
from utils.text_utils import normalize_label, parse_number

logger = structlog.get_logger(__name__)


# Column labels a model may echo back as a data row
HEADER_LABELS = {
    "description", "item", "items", "item name", "product", "product name",
    "name", "particulars", "quantity", "qty", "price", "total", "amount",
    "line total", "total price", "#", "no", "sl", "s.no",
}

SEPARATOR_CHARS = set("-:|= +")

DEFAULT_QUANTITY = 1.0
DEFAULT_PRICE = 0.0


EXTRACTION_PROMPT = """You are a precise OCR agent reading a purchase invoice.

TASK:
Extract every line item from this invoice image as a markdown table with exactly three columns:

| Description | Quantity | Price |
|---|---|---|

RULES:
- One row per line item.
- Description: copy the item text EXACTLY as printed, character for character, in its original language and script. Do NOT translate, expand abbreviations or correct spelling.
- Quantity: the numeric quantity only.
- Price: the TOTAL amount for the line (not the unit price), numbers only.
- If a description wraps onto a second line that has no quantity or price of its own, merge it into the row above instead of creating a new row.
- Skip subtotals, taxes, discounts, totals and any header or footer text.
- Output only the table. No commentary."""


def difficulty_score(record: ProductRecord) -> int:
    """
    Rank catalog entries by how likely OCR is to misread them.

    +20 for a local-name variant, +10 for metadata, +1 per character of
    the name.
    """
    score = len(record.name)
    if record.local_name:
        score += 20
    if record.metadata:
        score += 10
    return score


def build_vocabulary_hint(catalog: Sequence[ProductRecord], limit: int = 200) -> str:
    """Bullet list of the hardest catalog spellings, hardest first."""
    if limit <= 0 or not catalog:
        return ""

    ranked = sorted(catalog, key=difficulty_score, reverse=True)[:limit]
    lines = []
    for record in ranked:
        entry = record.name
        if record.local_name:
            entry += f" / {record.local_name}"
        lines.append(f"- {entry}")
    return "\n".join(lines)


def build_extraction_prompt(
    catalog: Sequence[ProductRecord],
    feedback: Optional[FeedbackSet] = None,
    vocabulary_limit: int = 200
) -> str:
    """Assemble the OCR prompt with vocabulary hint and feedback."""
    sections = [EXTRACTION_PROMPT]

    vocabulary = build_vocabulary_hint(catalog, vocabulary_limit)
    if vocabulary:
        sections.append(
            "KNOWN PRODUCT SPELLINGS:\n"
            "These products appear in the buyer's catalog. When a handwritten or "
            "blurry word resembles one of them, prefer that spelling. Never invent "
            "items that are not on the invoice.\n"
            f"{vocabulary}"
        )

    if feedback:
        sections.append(
            "PREVIOUS MISTAKES:\n"
            "A previous reading of this invoice produced these rows, which the user "
            "marked as incorrect. Look very carefully at the matching lines and read "
            "their text and amounts again:\n"
            f"{json.dumps(feedback.extraction_hints(), ensure_ascii=False, indent=2)}"
        )

    return "\n\n".join(sections)


# ===================
# RESPONSE PARSING
# ===================

def _split_cells(line: str) -> list[str]:
    return [cell.strip() for cell in line.strip().strip("|").split("|")]


def is_separator_row(line: str) -> bool:
    """True for rows made only of separator characters, like |---|:--:|."""
    stripped = line.strip()
    return bool(stripped) and set(stripped) <= SEPARATOR_CHARS


def is_header_row(cells: Sequence[str]) -> bool:
    """True when every cell is a column label, like | Description | Qty | Price |."""
    return all(normalize_label(cell) in HEADER_LABELS for cell in cells)


def parse_table_row(line: str) -> Optional[RawLineItem]:
    """
    Parse one pipe-delimited row.

    "| Mango 250g | 3 | 150 |" → RawLineItem("Mango 250g", 3, 150)

    Returns:
        RawLineItem, or None for separators, headers and rows with fewer
        than three non-empty cells
    """
    if "|" not in line or is_separator_row(line):
        return None

    cells = [c for c in _split_cells(line) if c]
    if len(cells) < 3:
        return None
    if is_header_row(cells):
        return None

    return RawLineItem(
        raw_name=cells[0],
        raw_quantity=parse_number(cells[1], DEFAULT_QUANTITY),
        raw_price=parse_number(cells[-1], DEFAULT_PRICE),
    )


def parse_table(text: str) -> list[RawLineItem]:
    """
    Parse a markdown table response into raw items.

    Data rows start after the first separator row containing `---`. A
    response without any separator is read row by row.
    """
    lines = [line for line in (text or "").splitlines() if line.strip()]

    start = 0
    for i, line in enumerate(lines):
        if "---" in line:
            start = i + 1
            break

    items = []
    for line in lines[start:]:
        item = parse_table_row(line)
        if item is not None:
            items.append(item)
    return items


def parse_json_items(text: str) -> list[RawLineItem]:
    """Decode the schema-constrained variant: {"items": [{raw_name, ...}]}."""
    data = decode_json(text, {"items": []}, context="extraction")
    rows = data.get("items", []) if isinstance(data, dict) else data
    if not isinstance(rows, list):
        return []

    items = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        name = str(row.get("raw_name") or "").strip()
        if not name:
            continue
        items.append(RawLineItem(
            raw_name=name,
            raw_quantity=parse_number(str(row.get("raw_quantity", "")), DEFAULT_QUANTITY),
            raw_price=parse_number(str(row.get("raw_price", "")), DEFAULT_PRICE),
        ))
    return items


def parse_extraction_response(text: str) -> list[RawLineItem]:
    """Read a chunk response as a pipe table, or as JSON items if it is JSON."""
    stripped = (text or "").strip()
    if not stripped:
        return []

    items = parse_table(stripped)
    if items:
        return items

    if "{" in stripped or stripped.startswith("["):
        return parse_json_items(stripped)
    return []


# ===================
# SERVICE
# ===================

class ExtractionService:
    """
    Read invoice line items from image chunks.

    Provider errors that survive the retry harness propagate; a chunk
    whose response cannot be parsed contributes no rows.
    """

    def __init__(
        self,
        router: Optional[ProviderRouter] = None,
        retry: Optional[RetryPolicy] = None,
        vocabulary_limit: Optional[int] = None
    ):
        settings = get_settings()
        self.router = router or get_provider_router()
        self.retry = retry or RetryPolicy.from_settings(settings)
        self.vocabulary_limit = (
            vocabulary_limit if vocabulary_limit is not None
            else settings.vocabulary_hint_limit
        )

    async def extract(
        self,
        image_chunks: Sequence[str],
        config: ProviderConfig,
        catalog: Sequence[ProductRecord],
        feedback: Optional[FeedbackSet] = None
    ) -> list[RawLineItem]:
        """
        Extract raw line items from every chunk, in chunk order.

        Args:
            image_chunks: Base64 image slices of one invoice, top to bottom
            config: Provider selection
            catalog: Catalog used for the vocabulary hint
            feedback: Rows flagged as wrong on a previous run

        Returns:
            Raw items; empty when no chunk yields a valid row

        Raises:
            ConfigurationError: If no vision credential is available
        """
        provider = self.router.for_vision(config)
        prompt = build_extraction_prompt(catalog, feedback, self.vocabulary_limit)

        logger.info(
            "extraction_started",
            provider=provider.name.value,
            chunks=len(image_chunks),
            has_feedback=bool(feedback)
        )

        items: list[RawLineItem] = []
        for index, chunk in enumerate(image_chunks, start=1):
            # Chunks are slices of one document; keep them strictly ordered
            text = await self.retry.run(
                lambda chunk=chunk: provider.complete_vision([chunk], prompt),
                label="extract_chunk"
            )
            rows = parse_extraction_response(text)
            if not rows:
                logger.warning(
                    "extraction_chunk_empty",
                    chunk=index,
                    response_preview=(text or "")[:200]
                )
            else:
                logger.debug("extraction_chunk_parsed", chunk=index, rows=len(rows))
            items.extend(rows)

        logger.info("extraction_completed", items=len(items), chunks=len(image_chunks))
        return items


# Singleton instance
_extraction_service: Optional[ExtractionService] = None


def get_extraction_service() -> ExtractionService:
    """Get or create ExtractionService instance."""
    global _extraction_service
    if _extraction_service is None:
        _extraction_service = ExtractionService()
    return _extraction_service
