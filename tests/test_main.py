import io
import os
import subprocess
import sys
from pathlib import Path

import orjson
import pytest

from pricefusion import main as main_module
from pricefusion.config import Settings
from pricefusion.main import build_parser, build_pipeline, cmd_replay, replay_lines

from conftest import NOW

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def line(instrument="btc", now=NOW, prices=(100.0, 100.2, 99.9), change=0.5):
    return orjson.dumps({
        "instrument": instrument,
        "observations": [
            {"source": src, "price": p, "volume": 5.0, "timestamp_ms": now}
            for src, p in zip(("Pyth", "WebSocket", "CoinGecko"), prices)
        ],
        "change_pct": change,
        "now_ms": now,
    }).decode()


@pytest.fixture
def cfg():
    return Settings(SOURCE_WEIGHTS_FILE=None, STORE_MAX_INSTRUMENTS=0)


def test_replay_skips_malformed_lines(cfg):
    pipeline = build_pipeline(cfg)
    lines = io.StringIO("\n".join([
        line(),
        "",
        "{not json",
        orjson.dumps({"instrument": "btc"}).decode(),
        orjson.dumps({"instrument": "btc", "observations": [{"source": "Pyth", "price": "abc"}]}).decode(),
        line(now=NOW + 1000),
    ]))

    results = list(replay_lines(pipeline, lines))

    assert len(results) == 2
    assert pipeline.predictor.store.get("btc").steps == 2


def test_replay_zero_price_batch(cfg):
    pipeline = build_pipeline(cfg)
    results = list(replay_lines(pipeline, io.StringIO(line(prices=(0.0, 0.0, 0.0)))))

    assert len(results) == 1
    assert results[0].prediction is None
    assert pipeline.skipped_count == 1


def test_cmd_replay_writes_json_lines(cfg, tmp_path):
    path = tmp_path / "batches.jsonl"
    path.write_text("\n".join(line(now=NOW + i * 1000, change=0.3 * i) for i in range(5)) + "\n")
    out = io.StringIO()

    assert cmd_replay(cfg, str(path), out) == 0

    rows = [orjson.loads(r) for r in out.getvalue().splitlines()]
    assert len(rows) == 5
    assert [r["aggregated"]["timestamp_ms"] for r in rows] == [NOW + i * 1000 for i in range(5)]
    assert all(r["prediction"]["bias"] in ("LONG", "SHORT", "NEUTRAL") for r in rows)


def test_build_pipeline_loads_weights_file(tmp_path):
    path = tmp_path / "weights.json"
    path.write_bytes(orjson.dumps({"Kraken": 0.6}))

    pipeline = build_pipeline(Settings(SOURCE_WEIGHTS_FILE=str(path)))

    assert pipeline.engine.weights.snapshot().as_dict() == {"Kraken": 0.6}


def test_main_returns_error_code_on_missing_file(monkeypatch, tmp_path):
    monkeypatch.setattr(main_module, "setup_logging", lambda level, stream=None: None)
    assert main_module.main(["replay", str(tmp_path / "missing.jsonl")]) == 2


def test_parser():
    args = build_parser().parse_args(["--log-level", "DEBUG", "replay", "x.jsonl"])
    assert args.command == "replay"
    assert args.path == "x.jsonl"
    assert args.log_level == "DEBUG"

    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_main_replay_logs_to_stderr(monkeypatch, tmp_path):
    streams = []
    monkeypatch.setattr(main_module, "setup_logging", lambda level, stream=None: streams.append(stream))
    path = tmp_path / "batches.jsonl"
    path.write_text(line() + "\n")
    monkeypatch.setattr(sys, "stdout", io.StringIO())

    assert main_module.main(["replay", str(path)]) == 0
    assert streams == [sys.stderr]


def test_replay_stdout_holds_only_result_rows(tmp_path):
    path = tmp_path / "batches.jsonl"
    path.write_text(line() + "\n{not json\n")
    env = dict(os.environ, LOG_LEVEL="DEBUG")
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(SRC_DIR), env.get("PYTHONPATH", "")) if p)

    proc = subprocess.run(
        [sys.executable, "-m", "pricefusion", "replay", str(path)],
        capture_output=True,
        text=True,
        env=env,
        cwd=tmp_path,
        timeout=120,
        check=False,
    )

    assert proc.returncode == 0, proc.stderr
    rows = [orjson.loads(r) for r in proc.stdout.splitlines()]
    assert len(rows) == 1
    assert rows[0]["instrument"] == "btc"
    assert rows[0]["prediction"] is not None

    events = [orjson.loads(r)["message"] for r in proc.stderr.splitlines() if r.startswith("{")]
    assert "pricefusion_starting" in events
    assert "replay_line_invalid" in events
    assert "replay_complete" in events
