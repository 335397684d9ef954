import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.errors import BindingError, CalculationError, InvalidEntityError, StorageError
from server.api import router as workbench_router
from server.context import WorkbenchContext

logger = logging.getLogger("uvicorn.error")
load_dotenv()


async def _binding_error(request: Request, exc: BindingError):
    logger.warning("Chart binding failed: reason=%s detail=%s", exc.reason.value, exc.message)
    return JSONResponse(status_code=422, content=exc.to_dict())


async def _calculation_error(request: Request, exc: CalculationError):
    logger.warning("Calculation failed: %s", exc)
    return JSONResponse(status_code=422, content={"detail": str(exc), "error": type(exc).__name__})


async def _invalid_entity(request: Request, exc: InvalidEntityError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


async def _storage_error(request: Request, exc: StorageError):
    logger.error("Storage failure: %s", exc)
    return JSONResponse(status_code=507, content={"detail": str(exc)})


def create_app(context: Optional[WorkbenchContext] = None) -> FastAPI:
    settings = context.settings if context is not None else get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    app = FastAPI(
        title="Light-weight Analytics Workbench",
        description="Datasets, metrics and chart-ready series",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.workbench = context or WorkbenchContext.from_settings(settings)
    app.add_exception_handler(BindingError, _binding_error)
    app.add_exception_handler(CalculationError, _calculation_error)
    app.add_exception_handler(InvalidEntityError, _invalid_entity)
    app.add_exception_handler(StorageError, _storage_error)
    app.include_router(workbench_router)

    @app.get("/health")
    async def health():
        ctx = app.state.workbench
        return {
            "ok": True,
            "datasets": len(ctx.datasets),
            "metrics": len(ctx.metrics),
            "visualizations": len(ctx.visualizations),
        }

    logger.info("Workbench app created")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
