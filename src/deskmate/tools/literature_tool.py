"""PubMed literature search via NCBI E-utilities.

Results are rendered as a markdown table the model can pass through to
the user verbatim.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from deskmate.tools.registry import SearchPubmedArgs, SearchPubmedFullArgs

logger = logging.getLogger(__name__)

EUTILS_BASE = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
PUBMED_URL = "https://pubmed.ncbi.nlm.nih.gov"
FULL_SEARCH_CAP = 1000
BATCH_DELAY = 0.2
REQUEST_TIMEOUT = 30.0

NO_RESULTS = "No PubMed results found."

TABLE_HEADER = "| # | Title | Source | Year | PMID |\n|---|-------|--------|------|------|\n"


def _get_json(client: httpx.Client, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
    response = client.get(f"{EUTILS_BASE}/{endpoint}", params={**params, "retmode": "json"})
    response.raise_for_status()
    return response.json()


def _esearch(client: httpx.Client, query: str, retmax: int, retstart: int = 0) -> tuple[int, list[str]]:
    data = _get_json(client, "esearch.fcgi", {
        "db": "pubmed",
        "term": query,
        "retmax": retmax,
        "retstart": retstart,
    })
    result = data.get("esearchresult") or {}
    return int(result.get("count") or 0), list(result.get("idlist") or [])


def _esummary(client: httpx.Client, ids: list[str]) -> list[dict[str, str]]:
    if not ids:
        return []
    data = _get_json(client, "esummary.fcgi", {"db": "pubmed", "id": ",".join(ids)})
    summaries = data.get("result") or {}
    rows = []
    for pmid in ids:
        doc = summaries.get(pmid)
        if not doc:
            continue
        rows.append({
            "title": str(doc.get("title", "")).replace("|", "\\|"),
            "source": str(doc.get("source", "")).replace("|", "\\|"),
            "year": doc.get("pubdate") or "N/A",
            "pmid": pmid,
        })
    return rows


def format_table(rows: list[dict[str, str]]) -> str:
    lines = [TABLE_HEADER]
    for i, row in enumerate(rows, start=1):
        lines.append(
            f"| {i} | [{row['title']}]({PUBMED_URL}/{row['pmid']}/) "
            f"| {row['source']} | {row['year']} | {row['pmid']} |\n"
        )
    return "".join(lines)


def search_pubmed(
    query: str,
    max_results: int = 20,
    client: httpx.Client | None = None,
) -> str:
    """Top PubMed hits for a query as a markdown table."""
    owns_client = client is None
    client = client or httpx.Client(timeout=REQUEST_TIMEOUT)
    try:
        total, ids = _esearch(client, query, max_results)
        if not ids:
            return NO_RESULTS
        rows = _esummary(client, ids)
    finally:
        if owns_client:
            client.close()

    output = f"PubMed Search Results (showing {len(ids)} of {total} total):\n\n"
    output += format_table(rows)
    if total > FULL_SEARCH_CAP:
        output += (
            f"\nNote: This search returned {total} results in total. "
            f"Currently showing the first {len(ids)}. "
            "If you need all results, they can be retrieved in batches "
            "(this may take some time and consume more tokens)."
        )
    elif total > max_results:
        output += (
            f"\nTip: There are {total} results total. "
            f"Currently showing the first {len(ids)}."
        )
    return output


def search_pubmed_full(
    query: str,
    batch_size: int = 100,
    client: httpx.Client | None = None,
    delay: float = BATCH_DELAY,
) -> str:
    """Up to FULL_SEARCH_CAP PubMed hits, fetched in batches."""
    owns_client = client is None
    client = client or httpx.Client(timeout=REQUEST_TIMEOUT)
    rows: list[dict[str, str]] = []
    try:
        total, _ = _esearch(client, query, 0)
        if total == 0:
            return NO_RESULTS

        max_fetch = min(total, FULL_SEARCH_CAP)
        for start in range(0, max_fetch, batch_size):
            _, ids = _esearch(client, query, min(batch_size, max_fetch - start), start)
            rows.extend(_esummary(client, ids))
            logger.debug("Fetched PubMed batch at %d (%d ids)", start, len(ids))
            # Stay under NCBI's request rate limit
            if start + batch_size < max_fetch and delay > 0:
                time.sleep(delay)
    finally:
        if owns_client:
            client.close()

    output = f"PubMed Full Search Results ({len(rows)} of {total} total):\n\n"
    output += format_table(rows)
    if total > FULL_SEARCH_CAP:
        output += f"\n\nNote: Only the first {FULL_SEARCH_CAP} results were retrieved (out of {total} total)."
    return output


def handle_search_pubmed(args: SearchPubmedArgs) -> str:
    return search_pubmed(args.query, args.max_results)


def handle_search_pubmed_full(args: SearchPubmedFullArgs) -> str:
    return search_pubmed_full(args.query, args.batch_size)
