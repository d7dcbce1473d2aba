"""
Discovery - hybrid search, serendipity and citations over narrative records

Entry point for the command-line interface.

Usage:
    python main.py search "lights over the lake"                # Hybrid search
    python main.py search "lights over the lake" --category ufo  # Restrict to one category
    python main.py search "lights" --limit 5                    # Cap the result count
    python main.py similar <record-id>                          # Records like an existing one
    python main.py serendipity "lights over the lake"           # Search + cross-category connection
    python main.py outbox status                                # Queued messages
    python main.py outbox sync [url]                            # Replay the queue

Configuration:
    Set options in config.yaml (or the file named by DISCOVERY_CONFIG) or
    via environment variables: DISCOVERY_DB, DISCOVERY_EMBEDDINGS,
    DISCOVERY_OUTBOX_URL.
"""

import asyncio
import logging
import sys

from utils.console import console

# Configure logging with immediate stderr output
handler = logging.StreamHandler(sys.stderr)
handler.setLevel(logging.INFO)
handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

# Suppress noisy library loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("LiteLLM").setLevel(logging.WARNING)
logging.root.addHandler(handler)
logging.root.setLevel(logging.INFO)
logger = logging.getLogger(__name__)

USAGE = 'Usage: python main.py [search "<query>" [--category c] [--limit n] | similar <id> | serendipity "<query>" | outbox status|sync [url]]'


def _pop_option(args: list[str], name: str) -> str | None:
    """Remove ``name value`` from args and return the value."""
    if name not in args:
        return None
    i = args.index(name)
    if i + 1 >= len(args):
        raise ValueError(f"{name} needs a value")
    value = args[i + 1]
    del args[i : i + 2]
    return value


def main():
    """Main entry point."""
    if len(sys.argv) < 2:
        console.system(USAGE)
        sys.exit(1)

    command = sys.argv[1]
    args = sys.argv[2:]

    try:
        if command == "search":
            category = _pop_option(args, "--category")
            limit = _pop_option(args, "--limit")
            if not args:
                raise ValueError("search needs a query")
            asyncio.run(run_search(" ".join(args), category, int(limit) if limit else None))

        elif command == "similar":
            if not args:
                raise ValueError("similar needs a record id")
            asyncio.run(run_similar(args[0]))

        elif command == "serendipity":
            if not args:
                raise ValueError("serendipity needs a query")
            asyncio.run(run_serendipity(" ".join(args)))

        elif command == "outbox":
            action = args[0] if args else "status"
            if action == "status":
                run_outbox_status()
            elif action == "sync":
                asyncio.run(run_outbox_sync(args[1] if len(args) > 1 else None))
            else:
                raise ValueError(f"Unknown outbox action: {action}")

        else:
            console.error(f"Unknown command: {command}")
            console.system(USAGE)
            sys.exit(1)

    except ValueError as e:
        console.error(str(e))
        console.system(USAGE)
        sys.exit(1)
    except KeyboardInterrupt:
        console.system("\nInterrupted")


# ═══════════════════════════════════════════════════════════
# RETRIEVAL COMMANDS
# ═══════════════════════════════════════════════════════════


def _build_engine():
    from config import load_config
    from metrics import ResilienceMetricsCollector
    from retrieval import DiscoveryEngine
    from utils.events import EventEmitter

    config = load_config()
    events = EventEmitter()
    collector = ResilienceMetricsCollector()
    collector.attach(events)
    return DiscoveryEngine.from_config(config, emitter=events), collector


def _report(collector):
    """Print what the resilience layer had to do, if anything."""
    summary = collector.get_summary(period="all")
    if summary.retry_attempts:
        console.system(f"{summary.retry_attempts} retried call(s)")
    for name, state in summary.circuit_states.items():
        if state != "closed":
            console.warning(f"circuit '{name}' is {state}")


def _print_result(result):
    if result.is_empty():
        console.system("No matching records")
        return
    for i, hit in enumerate(result.records, start=1):
        record = hit.record
        console.hit(i, record.title, record.category, hit.fused_score, record.text[:120])
    if result.has_more:
        console.system("More results available")
    if result.degraded:
        console.warning(
            "results are degraded, failed signals: " + ", ".join(result.failed_signals)
        )


async def _run(engine, collector, coro):
    from resilience import ResilienceError, describe_error

    try:
        return await coro
    except ResilienceError as e:
        error = describe_error(e)
        logger.debug("Command failed: %s", error.technical_details)
        console.error(error.user_message)
        sys.exit(1)
    finally:
        _report(collector)
        engine.close()


async def run_search(query: str, category: str | None = None, limit: int | None = None):
    console.banner(f"Search: {query}")
    engine, collector = _build_engine()
    filters = {"category": category} if category else None
    result = await _run(engine, collector, engine.search(query, filters, max_results=limit))
    _print_result(result)


async def run_similar(record_id: str):
    console.banner(f"Similar to: {record_id}")
    engine, collector = _build_engine()
    result = await _run(engine, collector, engine.similar(record_id))
    _print_result(result)


async def run_serendipity(query: str):
    console.banner(f"Serendipity: {query}")
    engine, collector = _build_engine()
    found = await _run(engine, collector, engine.discover(query))
    _print_result(found["result"])

    connection = found["serendipity"]
    if connection is None:
        console.system("No cross-category connection found")
        return
    console.success(connection.explanation)
    for i, similar in enumerate(connection.records, start=1):
        record = similar.record
        console.hit(i, record.title, record.category, similar.similarity)
    console.system(
        f"{connection.count} {connection.target_category} records, "
        f"average similarity {connection.aggregate_similarity:.3f}"
    )


# ═══════════════════════════════════════════════════════════
# OUTBOX COMMANDS
# ═══════════════════════════════════════════════════════════


def _build_outbox():
    from config import get_section, load_config
    from outbox import JsonFileStorage, Outbox

    section = get_section(load_config(), "outbox")
    outbox = Outbox(
        JsonFileStorage(section.get("path", "~/.discovery/outbox.json")),
        max_retries=int(section.get("max_retries", 3)),
        base_delay=float(section.get("base_delay", 1.0)),
    )
    return outbox, section


def run_outbox_status():
    outbox, _ = _build_outbox()
    queue = outbox.get_queue()
    console.banner(f"Outbox: {len(queue)} queued")
    for message in queue:
        console.text(
            f"{message.id}  {message.conversation_id}  {message.role}  "
            f"retries={message.retry_count}  {message.content[:60]}"
        )


async def run_outbox_sync(url: str | None = None):
    from outbox import HttpTransport

    outbox, section = _build_outbox()
    url = url or section.get("endpoint")
    if not url:
        raise ValueError("outbox sync needs a url (or outbox.endpoint in config)")

    console.banner(f"Outbox sync -> {url}")
    transport = HttpTransport(url, timeout=float(section.get("timeout", 30.0)))
    report = await outbox.sync(transport)
    console.success(
        f"{report.success} delivered, {report.failed} dropped, {report.deferred} deferred"
    )
    if outbox.count():
        console.system(f"{outbox.count()} message(s) still queued")


if __name__ == "__main__":
    main()
