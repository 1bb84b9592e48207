"""CLI entrypoint for embedding generation, cache management, search and Q&A."""

from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict

from hybrid_rag.config import SEARCH_MAX_RESULTS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hybrid-rag",
        description="Hybrid search and grounded Q&A over a small document collection.",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Run deterministic offline mode (no API keys or external model calls).",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    embed = sub.add_parser("embed", help="Generate and cache embeddings for a dataset.")
    embed.add_argument("dataset")

    cache = sub.add_parser("cache", help="Inspect or clear the embedding cache.")
    cache_sub = cache.add_subparsers(dest="cache_command", required=True)
    cache_list = cache_sub.add_parser("list", help="List cached providers and models.")
    cache_list.add_argument("dataset")
    cache_clear = cache_sub.add_parser("clear", help="Clear cached embeddings.")
    cache_clear.add_argument("dataset")
    cache_clear.add_argument("--provider", default=None)
    cache_clear.add_argument("--model", default=None)

    search = sub.add_parser("search", help="Rank passages for a query.")
    search.add_argument("dataset")
    search.add_argument("query")
    search.add_argument("--max-results", type=int, default=SEARCH_MAX_RESULTS)
    search.add_argument("--no-hybrid", action="store_true", help="Embedding similarity only.")
    search.add_argument("--weight", type=float, default=None, help="Embedding weight (0-1).")
    search.add_argument(
        "--paths",
        nargs="+",
        default=None,
        help="Index these files (pdf/txt/md/rst) instead of the dataset.",
    )

    ask = sub.add_parser("ask", help="Answer a question and validate its grounding.")
    ask.add_argument("dataset")
    ask.add_argument("question")
    ask.add_argument("--strict", action="store_true", help="Reject flagged answers.")
    ask.add_argument("--robust", action="store_true", help="Retry with more context.")
    ask.add_argument(
        "--paths",
        nargs="+",
        default=None,
        help="Index these files (pdf/txt/md/rst) instead of the dataset.",
    )
    return parser


def _configure_logging(verbose: bool) -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
            datefmt="%H:%M:%S",
        )


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True))


def _index(args, embedder, config=None):
    from hybrid_rag.pipeline import build_index, build_index_from_paths

    # The dataset name still labels the index when loose files are given.
    if args.paths:
        return build_index_from_paths(args.paths, embedder, config, dataset=args.dataset)
    return build_index(args.dataset, embedder, config)


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    if args.offline:
        os.environ["OFFLINE_MODE"] = "1"

    from hybrid_rag.embedding_cache import EmbeddingCache
    from hybrid_rag.llm_client import get_embedding_client, get_llm_client
    from hybrid_rag.pipeline import (
        build_index,
        robust_validated_rag,
        search,
        validated_rag,
    )
    from hybrid_rag.retrieval import SearchConfig

    if args.command == "cache":
        cache = EmbeddingCache.for_dataset(args.dataset)
        if args.cache_command == "list":
            _print([asdict(ns) for ns in cache.list_namespaces()])
        else:
            removed = cache.clear(args.provider, args.model)
            _print({"removed": removed})
        return

    embedder = get_embedding_client()

    if args.command == "embed":
        index = build_index(args.dataset, embedder)
        _print(
            {
                "dataset": index.dataset,
                "units": len(index.units),
                "provider": index.provider,
                "model": index.model,
            }
        )
        return

    if args.command == "search":
        overrides: dict = {
            "max_results": args.max_results,
            "enable_hybrid_search": not args.no_hybrid,
        }
        if args.weight is not None:
            overrides["embedding_weight"] = args.weight
        config = SearchConfig(**overrides)
        index = _index(args, embedder, config)
        results = search(index, args.query, embedder, config)
        _print(
            [
                {
                    "id": item.unit.label,
                    "score": item.score,
                    "embeddingScore": item.embedding_score,
                    "keywordScore": item.keyword_score,
                    "highlights": item.highlights,
                    "text": item.text,
                }
                for item in results
            ]
        )
        return

    llm = get_llm_client()
    index = _index(args, embedder)
    if args.robust:
        result = robust_validated_rag(index, args.question, llm, embedder)
    else:
        result = validated_rag(index, args.question, llm, embedder, strict_mode=args.strict)
    _print(result.model_dump())


if __name__ == "__main__":
    main()
