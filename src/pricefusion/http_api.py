"""
HTTP API Module
===============

FastAPI application exposing the fusion engine and the bias predictor.

Endpoints:
    GET  /health                          - Simple health check
    GET  /state                           - Metrics snapshot + tracked instruments
    POST /aggregate                       - Fuse a batch of observations
    POST /predict/{instrument}            - Predictor step from market fields
    POST /predict/{instrument}/features   - Predictor step from a raw feature vector
    POST /process/{instrument}            - Fuse a batch, then run a predictor step
    POST /reset/{instrument}              - Reset an instrument's predictor state
    GET  /instruments/{instrument}        - Predictor state diagnostics
    POST /control/source-weights          - Hot-update the source reliability table
    POST /control/source-weights/reload   - Re-read SOURCE_WEIGHTS_FILE into the table
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pricefusion import __version__
from pricefusion.errors import FeatureVectorError, SourceWeightsError
from pricefusion.features import MarketSnapshot
from pricefusion.pipeline import FusionPipeline
from pricefusion.source_weights import SourceWeightTable
from pricefusion.types import DEFAULT_OBSERVATION_CONFIDENCE, DEFAULT_OBSERVATION_VOLUME, Observation
from pricefusion.utils_time import now_ms

logger = logging.getLogger(__name__)


# Request models
class ObservationIn(BaseModel):
    """One source quote; sanitized on conversion."""
    source: str
    price: float
    volume: float = DEFAULT_OBSERVATION_VOLUME
    timestamp_ms: Optional[int] = None
    confidence: float = DEFAULT_OBSERVATION_CONFIDENCE

    def to_observation(self) -> Observation:
        return Observation.create(
            self.source,
            self.price,
            volume=self.volume,
            timestamp_ms=self.timestamp_ms,
            confidence=self.confidence,
        )


class AggregateRequest(BaseModel):
    observations: list[ObservationIn]
    now_ms: Optional[int] = None


class SnapshotRequest(BaseModel):
    price: float
    change_pct: float
    volume: float = 0.0
    volatility: Optional[float] = None
    momentum: Optional[float] = None
    timestamp_ms: Optional[int] = None

    def to_snapshot(self) -> MarketSnapshot:
        return MarketSnapshot(
            price=self.price,
            change_pct=self.change_pct,
            volume=self.volume,
            volatility=self.volatility,
            momentum=self.momentum,
            timestamp_ms=self.timestamp_ms if self.timestamp_ms is not None else now_ms(),
        )


class FeaturesRequest(BaseModel):
    features: list[float]
    timestamp_ms: Optional[int] = None


class ProcessRequest(BaseModel):
    observations: list[ObservationIn]
    change_pct: float
    volume: float = 0.0
    volatility: Optional[float] = None
    momentum: Optional[float] = None
    now_ms: Optional[int] = None


class SourceWeightsRequest(BaseModel):
    weights: dict[str, float] = Field(default_factory=dict)
    replace: bool = False


def create_app(
    pipeline: FusionPipeline,
    weights: Optional[SourceWeightTable] = None,
    weights_file: Optional[str] = None,
) -> FastAPI:
    """
    Create FastAPI application.

    Args:
        pipeline: Fusion pipeline (engine, predictor, metrics)
        weights: Source weight table for hot updates; defaults to the engine's
        weights_file: JSON weights file re-read by the reload endpoint

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Price Fusion",
        description="Multi-source price fusion and sequential bias prediction",
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
    )

    engine = pipeline.engine
    predictor = pipeline.predictor
    metrics = pipeline.metrics
    weight_table = weights if weights is not None else engine.weights

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"ok": True})

    @app.get("/state")
    async def state() -> JSONResponse:
        snapshot = metrics.snapshot()
        snapshot["instruments"] = predictor.store.instruments()
        snapshot["source_weights"] = {
            "version": weight_table.snapshot().version,
            "weights": weight_table.snapshot().as_dict(),
        }
        return JSONResponse(snapshot)

    @app.post("/aggregate")
    async def aggregate(req: AggregateRequest) -> JSONResponse:
        observations = [o.to_observation() for o in req.observations]
        aggregated = engine.aggregate_batch(observations, now=req.now_ms)
        metrics.observe_aggregation(aggregated)
        return JSONResponse(aggregated.to_dict())

    @app.post("/predict/{instrument}")
    async def predict(instrument: str, req: SnapshotRequest) -> JSONResponse:
        prediction = predictor.predict_snapshot(instrument, req.to_snapshot())
        metrics.observe_prediction(prediction)
        return JSONResponse(prediction.to_dict())

    @app.post("/predict/{instrument}/features")
    async def predict_features(instrument: str, req: FeaturesRequest) -> JSONResponse:
        try:
            prediction = predictor.predict(instrument, req.features, req.timestamp_ms)
        except FeatureVectorError as e:
            raise HTTPException(status_code=422, detail=str(e))
        metrics.observe_prediction(prediction)
        return JSONResponse(prediction.to_dict())

    @app.post("/process/{instrument}")
    async def process(instrument: str, req: ProcessRequest) -> JSONResponse:
        result = pipeline.process(
            instrument,
            [o.to_observation() for o in req.observations],
            change_pct=req.change_pct,
            volume=req.volume,
            volatility=req.volatility,
            momentum=req.momentum,
            now=req.now_ms,
        )
        return JSONResponse(result.to_dict())

    @app.post("/reset/{instrument}")
    async def reset(instrument: str) -> JSONResponse:
        pipeline.reset(instrument)
        return JSONResponse({"ok": True, "instrument": instrument})

    @app.get("/instruments/{instrument}")
    async def instrument_state(instrument: str) -> JSONResponse:
        snapshot = predictor.state_snapshot(instrument)
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"instrument {instrument!r} is not tracked")
        return JSONResponse({"instrument": instrument, "state": snapshot})

    @app.post("/control/source-weights")
    async def update_source_weights(req: SourceWeightsRequest) -> JSONResponse:
        try:
            snap = weight_table.update(req.weights, replace=req.replace)
        except SourceWeightsError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return JSONResponse({"version": snap.version, "weights": snap.as_dict()})

    @app.post("/control/source-weights/reload")
    async def reload_source_weights() -> JSONResponse:
        if not weights_file:
            raise HTTPException(status_code=409, detail="no source weights file configured")
        try:
            snap = weight_table.load_file(weights_file)
        except SourceWeightsError as e:
            logger.warning("source_weights_reload_failed", extra={"path": weights_file, "error": str(e)})
            raise HTTPException(status_code=422, detail=str(e))
        return JSONResponse({"version": snap.version, "weights": snap.as_dict(), "path": weights_file})

    return app
