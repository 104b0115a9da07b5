"""
Synthesis phase: raw line items to catalog matches.

Two steps:

1. Retrieval. Each raw item name is embedded and the nearest catalog
   records become its candidates. Items are embedded concurrently; an
   embedding failure leaves that item without candidates.
2. Adjudication. Items with candidates are sent to an LLM in chunks
   small enough to avoid truncated output. The prompt makes the model
   validate every metadata field the candidates carry and return null
   rather than a near miss.

Decisions are matched back to items per chunk, first by the echoed
`item_index`, then by the first unused decision with the same raw name,
so repeated raw names do not all inherit one decision.
"""

import asyncio
import json
import re
from typing import Any, Optional, Sequence

import structlog

from config import get_settings
from exceptions import EmbeddingFailure
from integrations import AIProvider, ProviderRouter, get_provider_router
from models.catalog import ProductRecord
from models.invoice import CandidateSet, FeedbackSet, MappedInvoiceItem, RawLineItem
from models.provider import ProviderConfig
from services.embedding_service import EmbeddingService, get_embedding_service
from services.retrieval_service import nearest
from services.retry_service import RetryPolicy
from utils.json_utils import decode_json
from utils.text_utils import normalize_label

logger = structlog.get_logger(__name__)


NO_CANDIDATES_REASON = "No catalog candidates were retrieved for this item."
NO_DECISION_REASON = "The model returned no decision for this item."

# Metadata keys that describe where a product comes from, not what it is
_PROVENANCE_KEY_RE = re.compile(
    r"origin|region|country|source|location|provenance|farm|port|state|city",
    re.IGNORECASE
)

MAPPING_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "mappings": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "item_index": {"type": "INTEGER"},
                    "raw_name": {"type": "STRING"},
                    "matched_product_id": {"type": "STRING", "nullable": True},
                    "reasoning": {"type": "STRING"},
                },
                "required": ["item_index", "raw_name", "matched_product_id", "reasoning"],
            },
        },
    },
    "required": ["mappings"],
}


SYNTHESIS_PROMPT = """You are a product mapping agent. Map each RAW INVOICE ITEM to at most one of its CANDIDATE PRODUCTS.

The candidates were retrieved by vector similarity, so the closest-sounding product is not necessarily correct. Check every candidate against every rule below and accept a candidate only if it passes all of them.

RULES:
1. PRODUCT IDENTITY FIRST. The core product name must be the same product (allowing for abbreviations, misspellings, transliteration and translation). If the name component differs, REJECT the candidate even when origin, region or other provenance metadata is identical.
   Example: "Kerala Prawns" and a catalog item "Kerala Mussels" share the origin "Kerala" but are different seafood products. They must NOT be matched.
2. METADATA MUST AGREE. For every metadata field listed below, if the invoice text states or clearly implies a value (brand, size, weight, volume, variant, grade, pack...), it must agree with the candidate's value. A different brand or size is a mismatch, not a close match.
3. PRICE SANITY. Compare each item's unit price with what the candidate implies (unit, size, pack). An unexplained large deviation is a mismatch signal; mention it in the reasoning.
4. When no candidate passes every check, return "matched_product_id": null. A null is better than a wrong match.
5. Always give a short reasoning (one sentence) for each decision, naming the rule that decided it.
{metadata_section}{feedback_section}
ITEMS TO MAP:
{items}

OUTPUT:
Return a JSON object: {{"mappings": [{{"item_index": <item_index>, "raw_name": <raw_name exactly as given>, "matched_product_id": <candidate id or null>, "reasoning": <short text>}}]}}
Return exactly one mapping per item, in the same order as the items."""


# ===================
# PROMPT BUILDING
# ===================

def collect_metadata_keys(chunk: Sequence[CandidateSet]) -> list[str]:
    """Union of metadata keys across the chunk's candidates, in first-seen order."""
    keys: dict[str, None] = {}
    for candidate_set in chunk:
        for candidate in candidate_set.candidates:
            for key in candidate.metadata:
                keys.setdefault(key, None)
    return list(keys)


def _metadata_section(keys: Sequence[str]) -> str:
    if not keys:
        return ""

    lines = [
        "",
        f"METADATA FIELDS PRESENT IN THIS BATCH: {', '.join(keys)}",
        "Validate each of these fields strictly for every candidate (rule 2).",
    ]
    provenance = [k for k in keys if _PROVENANCE_KEY_RE.search(k)]
    if provenance:
        lines.append(
            f"Provenance fields ({', '.join(provenance)}) describe where a product comes from. "
            "A shared provenance value NEVER justifies a match on its own (rule 1)."
        )
    return "\n".join(lines) + "\n"


def _feedback_section(feedback: Optional[FeedbackSet]) -> str:
    if not feedback:
        return ""
    return (
        "\nPREVIOUS WRONG MAPPINGS:\n"
        "The user marked these earlier decisions as incorrect. For these items choose a "
        "different candidate, or return null if no other candidate passes every rule:\n"
        f"{json.dumps(feedback.mapping_hints(), ensure_ascii=False, indent=2)}\n"
    )


def _candidate_payload(record: ProductRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": record.id,
        "name": record.name,
        "localName": record.local_name,
    }
    if record.unit:
        payload["unit"] = record.unit
    if record.metadata:
        payload["metadata"] = record.metadata
    return payload


def _item_payload(index: int, candidate_set: CandidateSet) -> dict[str, Any]:
    item = candidate_set.item
    return {
        "item_index": index,
        "raw_name": item.raw_name,
        "raw_quantity": item.raw_quantity,
        "raw_total_price": item.raw_price,
        "unit_price": round(item.unit_price, 4),
        "candidates": [_candidate_payload(c) for c in candidate_set.candidates],
    }


def build_synthesis_prompt(
    chunk: Sequence[CandidateSet],
    feedback: Optional[FeedbackSet] = None
) -> str:
    """Prompt for one adjudication call."""
    items = [_item_payload(i, cs) for i, cs in enumerate(chunk)]
    return SYNTHESIS_PROMPT.format(
        metadata_section=_metadata_section(collect_metadata_keys(chunk)),
        feedback_section=_feedback_section(feedback),
        items=json.dumps(items, ensure_ascii=False, indent=2),
    )


# ===================
# RESPONSE HANDLING
# ===================

def parse_mappings(text: str) -> list[dict[str, Any]]:
    """
    Decode an adjudication response into decision dicts.

    Accepts {"mappings": [...]} or a bare list. Never raises; any
    decoding problem yields [].
    """
    data = decode_json(text, {"mappings": []}, context="synthesis")
    if isinstance(data, dict):
        data = data.get("mappings", [])
    if not isinstance(data, list):
        return []
    return [d for d in data if isinstance(d, dict)]


def _clean_product_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none", "n/a"}:
        return None
    return text


def _clean_confidence(value: Any) -> Optional[float]:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    return min(max(score, 0.0), 1.0)


def _index_of(decision: dict[str, Any]) -> Optional[int]:
    value = decision.get("item_index")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _same_name(decision: dict[str, Any], item: RawLineItem) -> bool:
    name = normalize_label(item.raw_name)
    return bool(name) and normalize_label(str(decision.get("raw_name") or "")) == name


def merge_decisions(
    chunk: Sequence[CandidateSet],
    decisions: Sequence[dict[str, Any]]
) -> list[MappedInvoiceItem]:
    """
    Attach decisions to the chunk's items.

    An item takes the decision whose `item_index` points at it (when the
    decision's raw_name is absent or agrees), else the first unused
    decision with an equal raw_name. Items without a decision map to None.
    """
    used: set[int] = set()
    by_index: dict[int, int] = {}
    for d_pos, decision in enumerate(decisions):
        index = _index_of(decision)
        if index is not None and 0 <= index < len(chunk) and index not in by_index:
            by_index[index] = d_pos

    results = []
    for position, candidate_set in enumerate(chunk):
        item = candidate_set.item
        chosen: Optional[int] = None

        d_pos = by_index.get(position)
        if d_pos is not None and d_pos not in used:
            decision = decisions[d_pos]
            if "raw_name" not in decision or _same_name(decision, item):
                chosen = d_pos

        if chosen is None:
            for d_pos, decision in enumerate(decisions):
                if d_pos not in used and _same_name(decision, item):
                    chosen = d_pos
                    break

        if chosen is None:
            results.append(MappedInvoiceItem.unmatched(candidate_set, NO_DECISION_REASON))
            continue

        used.add(chosen)
        decision = decisions[chosen]
        confidence = _clean_confidence(decision.get("confidence_score"))
        reasoning = str(decision.get("reasoning") or "").strip()
        if not reasoning and confidence is not None:
            reasoning = f"Confidence {confidence:.2f}"

        results.append(MappedInvoiceItem(
            raw_name=item.raw_name,
            raw_quantity=item.raw_quantity,
            raw_price=item.raw_price,
            matched_product_id=_clean_product_id(decision.get("matched_product_id")),
            reasoning=reasoning,
            confidence_score=confidence,
            candidates=candidate_set.candidates,
        ))

    return results


def chunked(items: Sequence[Any], size: int) -> list[list[Any]]:
    """Split a sequence into lists of at most `size` items."""
    size = max(1, size)
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# ===================
# SERVICE
# ===================

class SynthesisService:
    """
    Retrieve candidates and adjudicate matches.

    Remote errors that survive the retry harness propagate and fail the
    invoice; undecodable responses only blank their own chunk.
    """

    def __init__(
        self,
        router: Optional[ProviderRouter] = None,
        embeddings: Optional[EmbeddingService] = None,
        retry: Optional[RetryPolicy] = None,
        top_k: Optional[int] = None
    ):
        settings = get_settings()
        self.router = router or get_provider_router()
        self.embeddings = embeddings or get_embedding_service()
        self.retry = retry or RetryPolicy.from_settings(settings)
        self.top_k = top_k if top_k is not None else settings.retrieval_top_k

    # ===================
    # RETRIEVAL
    # ===================

    async def _retrieve_one(
        self,
        item: RawLineItem,
        catalog: Sequence[ProductRecord],
        config: ProviderConfig
    ) -> CandidateSet:
        if not item.raw_name:
            return CandidateSet(item=item)

        try:
            query_vector = await self.embeddings.embed_query(item.raw_name, config)
        except EmbeddingFailure as e:
            logger.warning("query_embedding_failed", raw_name=item.raw_name, error=e.message)
            query_vector = []

        return CandidateSet(item=item, candidates=nearest(query_vector, catalog, self.top_k))

    async def retrieve_candidates(
        self,
        raw_items: Sequence[RawLineItem],
        catalog: Sequence[ProductRecord],
        config: ProviderConfig
    ) -> list[CandidateSet]:
        """Candidate set per raw item, same order as raw_items."""
        return list(await asyncio.gather(
            *(self._retrieve_one(item, catalog, config) for item in raw_items)
        ))

    # ===================
    # ADJUDICATION
    # ===================

    async def _adjudicate_chunk(
        self,
        provider: AIProvider,
        chunk: list[CandidateSet],
        catalog_ids: set[str],
        feedback: Optional[FeedbackSet],
        chunk_number: int
    ) -> list[MappedInvoiceItem]:
        prompt = build_synthesis_prompt(chunk, feedback)
        text = await self.retry.run(
            lambda: provider.complete_vision(
                [], prompt, json_output=True, response_schema=MAPPING_SCHEMA
            ),
            label="synthesize_chunk"
        )

        decisions = parse_mappings(text)
        if not decisions:
            logger.warning("synthesis_chunk_empty", chunk=chunk_number, items=len(chunk))

        mapped = merge_decisions(chunk, decisions)
        for item in mapped:
            if item.matched_product_id and item.matched_product_id not in catalog_ids:
                logger.warning(
                    "synthesis_unknown_product_id",
                    raw_name=item.raw_name,
                    product_id=item.matched_product_id
                )
                item.reasoning = f"Rejected unknown product id {item.matched_product_id}. {item.reasoning}".strip()
                item.matched_product_id = None
        return mapped

    async def synthesize(
        self,
        raw_items: Sequence[RawLineItem],
        catalog: Sequence[ProductRecord],
        config: ProviderConfig,
        feedback: Optional[FeedbackSet] = None
    ) -> list[MappedInvoiceItem]:
        """
        Map raw items onto catalog products.

        Args:
            raw_items: Items from the extraction phase
            catalog: Indexed catalog
            config: Provider selection
            feedback: Mappings flagged as wrong on a previous run

        Returns:
            One MappedInvoiceItem per raw item, same order

        Raises:
            ConfigurationError: If no credential is available
        """
        provider = self.router.for_mapping(config)
        candidate_sets = await self.retrieve_candidates(raw_items, catalog, config)

        positions = [i for i, cs in enumerate(candidate_sets) if cs.candidates]
        chunks = chunked([candidate_sets[i] for i in positions], provider.synthesis_chunk_size)
        catalog_ids = {record.id for record in catalog}

        logger.info(
            "synthesis_started",
            provider=provider.name.value,
            items=len(raw_items),
            with_candidates=len(positions),
            chunks=len(chunks),
            concurrent=provider.concurrent_synthesis
        )

        if provider.concurrent_synthesis:
            chunk_results = await asyncio.gather(*(
                self._adjudicate_chunk(provider, chunk, catalog_ids, feedback, n)
                for n, chunk in enumerate(chunks, start=1)
            ))
        else:
            chunk_results = []
            for n, chunk in enumerate(chunks, start=1):
                chunk_results.append(
                    await self._adjudicate_chunk(provider, chunk, catalog_ids, feedback, n)
                )

        adjudicated = [mapped for result in chunk_results for mapped in result]
        by_position = dict(zip(positions, adjudicated))

        results = [
            by_position.get(i) or MappedInvoiceItem.unmatched(cs, NO_CANDIDATES_REASON)
            for i, cs in enumerate(candidate_sets)
        ]

        logger.info(
            "synthesis_completed",
            items=len(results),
            matched=sum(1 for r in results if r.matched_product_id)
        )
        return results


# Singleton instance
_synthesis_service: Optional[SynthesisService] = None


def get_synthesis_service() -> SynthesisService:
    """Get or create SynthesisService instance."""
    global _synthesis_service
    if _synthesis_service is None:
        _synthesis_service = SynthesisService()
    return _synthesis_service
