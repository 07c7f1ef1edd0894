"""
Embedded read-only API for the Liquidity Nebula market state.

Runs in a daemon thread next to the event loop and reads the same
TickerTable and BaselineMap the terminal viewer renders from, so there is no
second copy of the state.

Usage:
    from nebula_stream.embedded_api import create_embedded_app, start_api_thread

    app = create_embedded_app(market)
    api_thread = start_api_thread(app, host="127.0.0.1", port=8899)

Endpoints:
    GET  /health
    GET  /tickers?sort=volume&limit=100
    GET  /tickers/{symbol}
    GET  /baselines
    GET  /timeframe
    POST /timeframe/{timeframe}
    GET  /stats
"""

import logging
import threading
import time

import uvicorn
from fastapi import FastAPI, HTTPException, Query

from nebula_stream import __version__
from nebula_stream.exceptions import UnsupportedTimeframeError
from nebula_stream.market_state import SORT_MODES, MarketState
from nebula_stream.timeframes import TIMEFRAMES

logger = logging.getLogger(__name__)

# Tickers not updated for this long are reported as stale
STALE_AFTER_SECONDS = 60.0


def create_embedded_app(market: MarketState) -> FastAPI:
    """Create the FastAPI application bound to ``market``."""
    start_time = time.time()

    app = FastAPI(
        title="Liquidity Nebula API (Embedded)",
        description="Live USDT-M futures ticker state with window-relative change",
        version=__version__,
    )

    @app.get("/health")
    async def health():
        stream = market.manager.get_stats()
        return {
            "ok": True,
            "version": __version__,
            "uptime_s": round(time.time() - start_time, 1),
            "stream_state": stream["state"],
            "symbols": len(market.table),
            "timeframe": market.timeframe,
            "baselines": len(market.baselines),
        }

    @app.get("/tickers")
    async def tickers(
        sort: str = Query(default="volume", description="gainers, losers, volume or favorites"),
        limit: int = Query(default=100, ge=1, le=5000),
    ):
        if sort not in SORT_MODES:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid sort '{sort}'. Valid: {', '.join(SORT_MODES)}",
            )
        rows = market.render_rows(limit=limit, sort=sort)
        return {"timeframe": market.timeframe, "count": len(rows), "tickers": rows}

    @app.get("/tickers/{symbol}")
    async def ticker(symbol: str):
        snapshot = market.get_ticker(symbol)
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"Unknown symbol '{symbol}'")
        reading = market.display_change(snapshot.symbol)
        age = market.table.age_of(snapshot.symbol)
        payload = snapshot.to_dict()
        payload.update({
            "timeframe": market.timeframe,
            "priceChangePercent": reading.percent,
            "provisional": reading.provisional,
            "baseline": market.baselines.get(snapshot.symbol),
            "ageSeconds": round(age, 3) if age is not None else None,
            "stale": age is not None and age > STALE_AFTER_SECONDS,
            "favorite": snapshot.symbol in market.favorites,
        })
        return payload

    @app.get("/baselines")
    async def baselines():
        current = market.baselines
        return {
            "timeframe": current.timeframe,
            "generation": current.generation,
            "count": len(current),
            "baselines": current.as_dict(),
        }

    @app.get("/timeframe")
    async def get_timeframe():
        return {"timeframe": market.timeframe, "available": list(TIMEFRAMES)}

    @app.post("/timeframe/{timeframe}")
    async def set_timeframe(timeframe: str):
        try:
            market.set_timeframe_threadsafe(timeframe)
        except UnsupportedTimeframeError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid timeframe '{timeframe}'. Valid: {', '.join(TIMEFRAMES)}",
            )
        except RuntimeError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"ok": True, "timeframe": timeframe}

    @app.get("/stats")
    async def stats():
        return market.get_stats()

    return app


def start_api_thread(
    app: FastAPI,
    host: str = "127.0.0.1",
    port: int = 8899,
    log_level: str = "warning",
) -> threading.Thread:
    """Start the API server in a background daemon thread."""

    def run_server():
        config = uvicorn.Config(
            app, host=host, port=port, log_level=log_level, access_log=False
        )
        server = uvicorn.Server(config)
        server.run()

    thread = threading.Thread(target=run_server, daemon=True, name="EmbeddedAPI")
    thread.start()
    logger.info("Embedded API started on http://%s:%d", host, port)
    return thread
