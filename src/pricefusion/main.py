"""
Main Entry Point
================

Entry point for the Price Fusion service.

Usage:
    python -m pricefusion serve
    python -m pricefusion replay batches.jsonl

serve:
    1. Load configuration from environment
    2. Setup JSON logging
    3. Build the source weight table (SOURCE_WEIGHTS, then SOURCE_WEIGHTS_FILE)
    4. Start the HTTP API (see http_api.py)

replay:
    Reads JSON lines of the form
        {"instrument": "btc", "observations": [{"source": "Pyth", "price": 1.0, ...}],
         "change_pct": 0.4, "volume": 1e9, "now_ms": 1706356800000}
    in order, and writes one JSON result per line to stdout. Logs go to
    stderr so stdout carries result rows only.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Iterator, Optional, TextIO

import orjson
import uvicorn

from pricefusion import __schema_version__, __version__
from pricefusion.bias_predictor import PredictorConfig, SequentialBiasPredictor
from pricefusion.config import Settings, settings
from pricefusion.errors import SourceWeightsError
from pricefusion.fusion import FusionConfig, PriceFusionEngine
from pricefusion.http_api import create_app
from pricefusion.logging_setup import setup_logging
from pricefusion.metrics import Metrics
from pricefusion.pipeline import FusionPipeline, PipelineResult
from pricefusion.source_weights import SourceWeightTable
from pricefusion.types import DEFAULT_OBSERVATION_CONFIDENCE, DEFAULT_OBSERVATION_VOLUME, Observation

logger = logging.getLogger(__name__)


def build_pipeline(cfg: Settings) -> FusionPipeline:
    """Wire engine, predictor and metrics from settings."""
    weights = SourceWeightTable(cfg.SOURCE_WEIGHTS, default=cfg.FUSION_DEFAULT_SOURCE_WEIGHT)
    if cfg.SOURCE_WEIGHTS_FILE:
        weights.load_file(cfg.SOURCE_WEIGHTS_FILE)

    engine = PriceFusionEngine(weights, FusionConfig.from_settings(cfg))
    predictor = SequentialBiasPredictor(
        PredictorConfig.from_settings(cfg),
        max_instruments=cfg.STORE_MAX_INSTRUMENTS,
    )
    return FusionPipeline(engine, predictor, Metrics())


def _parse_observation(raw: dict) -> Observation:
    return Observation.create(
        raw["source"],
        float(raw["price"]),
        volume=float(raw.get("volume", DEFAULT_OBSERVATION_VOLUME)),
        timestamp_ms=raw.get("timestamp_ms"),
        confidence=float(raw.get("confidence", DEFAULT_OBSERVATION_CONFIDENCE)),
    )


def replay_lines(pipeline: FusionPipeline, lines: TextIO) -> Iterator[PipelineResult]:
    """
    Run every batch line through the pipeline, skipping malformed lines.
    """
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            batch = orjson.loads(line)
            observations = [_parse_observation(o) for o in batch["observations"]]
            result = pipeline.process(
                batch["instrument"],
                observations,
                change_pct=float(batch.get("change_pct", 0.0)),
                volume=float(batch.get("volume", 0.0)),
                volatility=batch.get("volatility"),
                momentum=batch.get("momentum"),
                now=batch.get("now_ms"),
            )
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "replay_line_invalid",
                extra={"line": lineno, "error": str(e)},
            )
            continue
        yield result


async def run_http_server(app, host: str, port: int) -> None:
    """Run uvicorn HTTP server."""
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)

    logger.info(
        "http_server_starting",
        extra={"host": host, "port": port},
    )

    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("http_server_cancelled")

    logger.info("http_server_stopped")


def cmd_serve(cfg: Settings) -> int:
    pipeline = build_pipeline(cfg)
    app = create_app(pipeline, weights_file=cfg.SOURCE_WEIGHTS_FILE)
    asyncio.run(run_http_server(app, cfg.HTTP_HOST, cfg.HTTP_PORT))
    return 0


def cmd_replay(cfg: Settings, path: str, out: TextIO) -> int:
    pipeline = build_pipeline(cfg)
    with Path(path).open("r", encoding="utf-8") as f:
        for result in replay_lines(pipeline, f):
            out.write(orjson.dumps(result.to_dict()).decode("utf-8") + "\n")

    logger.info(
        "replay_complete",
        extra={
            "processed": pipeline.processed_count,
            "skipped": pipeline.skipped_count,
            "metrics": pipeline.metrics.snapshot(),
        },
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pricefusion",
        description="Multi-source price fusion and sequential bias prediction",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the HTTP API")

    replay = sub.add_parser("replay", help="Replay JSON-lines observation batches")
    replay.add_argument("path", help="JSON-lines file with one batch per line")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    log_stream = sys.stderr if args.command == "replay" else sys.stdout
    setup_logging(args.log_level or settings.LOG_LEVEL, stream=log_stream)

    logger.info(
        "pricefusion_starting",
        extra={
            "version": __version__,
            "schema_version": __schema_version__,
            "command": args.command,
            "config": settings.dump(),
        },
    )

    try:
        if args.command == "serve":
            return cmd_serve(settings)
        return cmd_replay(settings, args.path, sys.stdout)
    except SourceWeightsError as e:
        logger.error("source_weights_invalid", extra={"error": str(e)})
        return 2
    except OSError as e:
        logger.error("io_error", extra={"error": str(e)})
        return 2


def run() -> None:
    """Synchronous entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.info("pricefusion_interrupted")


if __name__ == "__main__":
    run()
