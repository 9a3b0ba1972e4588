"""Terminal client that reuses the in-process search service."""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Iterable

from propsearch.models import SearchResult, SuggestionList
from propsearch.service import SearchService, build_service

MAX_RESULTS = 100
GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"


def _filters(args: argparse.Namespace) -> dict:
    raw = {
        "cities": args.city,
        "min_price": args.min_price,
        "max_price": args.max_price,
        "lat": args.lat,
        "lon": args.lon,
        "radius_km": args.radius,
    }
    return {key: value for key, value in raw.items() if value is not None}


async def perform_query(service: SearchService, query: str, args: argparse.Namespace) -> SearchResult:
    return await service.search(query, args.lang, _filters(args), 0, min(args.limit, MAX_RESULTS), args.sort)


async def perform_suggest(service: SearchService, prefix: str, args: argparse.Namespace) -> SuggestionList:
    geo_hint = (args.lat, args.lon) if args.lat is not None and args.lon is not None else None
    return await service.suggest(prefix, args.lang, geo_hint, args.limit)


def _eta_label(eta: float) -> str:
    color = GREEN if eta < 200 else RED
    return f"{color}{eta:.1f} ms{RESET}"


def pretty_print_response(query: str, result: SearchResult) -> None:
    meta = result.metadata
    cache = "hit" if meta.cache_hit else "miss"
    print(f"Query: {query} | results: {result.page.total} | ETA: {_eta_label(meta.latency_ms)} | cache: {cache}")
    if meta.fallbacks:
        print(f"  degraded: {', '.join(meta.fallbacks)}")
    for idx, hit in enumerate(result.hits, start=1):
        distance = f" | {hit.distance_km:.2f} km" if hit.distance_km is not None else ""
        price = f"{hit.lowest_price:,.0f} {hit.currency}" if hit.lowest_price is not None else "-"
        print(f"  {idx:02d}. score={hit.score.final:.3f} | {hit.name} | {hit.city or '-'} | {price}{distance}")


def pretty_print_suggestions(prefix: str, result: SuggestionList) -> None:
    print(f"Prefix: {prefix} | suggestions: {len(result.suggestions)} | ETA: {_eta_label(result.metadata.latency_ms)}")
    for idx, item in enumerate(result.suggestions, start=1):
        print(f"  {idx:02d}. [{item.type.value.lower()}/{item.match}] {item.display_text} ({item.score:.2f})")


def run(service: SearchService, query: str, args: argparse.Namespace) -> None:
    if args.suggest:
        pretty_print_suggestions(query, asyncio.run(perform_suggest(service, query, args)))
    else:
        pretty_print_response(query, asyncio.run(perform_query(service, query, args)))


def interactive_shell(service: SearchService, args: argparse.Namespace) -> None:
    print("Interactive property search. Type 'exit' to quit.")
    while True:
        try:
            query = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return
        if query.lower() in {"exit", "quit"}:
            return
        run(service, query, args)


def batch_mode(service: SearchService, file_path: Path, args: argparse.Namespace) -> None:
    with file_path.open("r", encoding="utf-8") as fh:
        for line in fh:
            query = line.strip()
            if not query:
                continue
            run(service, query, args)


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="CLI client for the property search service")
    parser.add_argument("query", nargs="?", help="Query string. If omitted, starts REPL mode.")
    parser.add_argument("--batch", type=Path, help="File with queries to execute line by line")
    parser.add_argument("--suggest", action="store_true", help="Autocomplete instead of full search")
    parser.add_argument("--lang", default=None, help="Query language (vi, en)")
    parser.add_argument("--city", action="append", help="City filter, may be repeated")
    parser.add_argument("--min-price", type=float)
    parser.add_argument("--max-price", type=float)
    parser.add_argument("--lat", type=float)
    parser.add_argument("--lon", type=float)
    parser.add_argument("--radius", type=float, help="Radius in km around --lat/--lon")
    parser.add_argument("--sort", default=None, help="RELEVANCE, DISTANCE, PRICE_LOW_TO_HIGH, ...")
    parser.add_argument("--limit", type=int, default=20)
    args = parser.parse_args(list(argv) if argv is not None else None)

    service = build_service()
    if args.batch:
        batch_mode(service, args.batch, args)
        return 0
    if args.query:
        run(service, args.query, args)
        return 0
    interactive_shell(service, args)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
