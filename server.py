#!/usr/bin/env python3
"""
Cross-chain swap resolver server.

Fills swap orders between an EVM chain and a bitcoin chain: locks the maker's
funds on the source chain, the resolver's funds on the destination chain,
and withdraws both once the maker reveals the secret.

Endpoints:
  GET  /api/status                              - Health check, configured chains
  POST /api/orders                              - Submit order (escrows created in background)
  GET  /api/orders                              - List orders
  GET  /api/orders/{hash}                       - Order detail
  GET  /api/orders/{hash}/status                - Order status
  POST /api/orders/{hash}/escrow                - Create / resume escrows
  POST /api/orders/{hash}/secret                - Relay secret, withdraw both legs
  POST /api/orders/{hash}/cancel                - Cancel both legs
  GET  /api/orders/{hash}/dst-withdraw-params   - Destination withdrawal data for the maker
"""

import os
import logging
import threading
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from resolver import __version__
from resolver.config import ResolverConfig, build_orchestrator
from resolver.swap.orchestrator import Orchestrator
from routes import orders

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)


# =============================================================================
# APP SETUP
# =============================================================================

def create_app(orchestrator: Optional[Orchestrator] = None, recover: bool = True) -> FastAPI:
    """
    Build the API around an orchestrator.

    Args:
        orchestrator: Wired orchestrator (built from the environment when None)
        recover: Resume orders left in 'created' on startup
    """
    if orchestrator is None:
        orchestrator = build_orchestrator(ResolverConfig.from_env())

    app = FastAPI(
        title="Swap Resolver",
        description="Cross-chain HTLC swap resolver",
        version=__version__,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    orders.configure(orchestrator)
    app.include_router(orders.router)

    @app.on_event("startup")
    def startup_event():
        if recover:
            # Recovery blocks on chain calls
            threading.Thread(target=orchestrator.process_pending,
                             name="startup-recovery", daemon=True).start()
        log.info(f"Resolver started with chains {sorted(orchestrator.adapters)}")

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting resolver on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
