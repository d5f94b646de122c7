import asyncio
import sys
import time
import uuid
from typing import List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from dotenv import load_dotenv
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from config import SERVICE_NAME, Settings, get_settings
from hana import fetch_products, resolve_connection
from models import Product, ProductStore, utcnow
from schemas import DiagnoseResponse, HealthResponse, ProductCreate, ProductResponse, ProductUpdate

# Chargement des variables d'environnement
load_dotenv()

settings = get_settings()


def configure_logging(cfg: Settings) -> None:
    logger.remove()
    logger.add(
        sink=sys.stderr,
        format="{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {message} | {extra}",
        level=cfg.log_level,
    )
    if cfg.log_file:
        logger.add(
            sink=cfg.log_file,
            level=cfg.log_level,
            serialize=True,
            rotation="1 day",
        )


configure_logging(settings)

# Prometheus metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "method", "endpoint", "status"]
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["service", "method", "endpoint"]
)
ERROR_COUNT = Counter(
    "http_errors_total",
    "Total HTTP errors",
    ["service", "endpoint", "error_type"]
)
PRODUCT_READS = Counter(
    "product_reads_total",
    "Product reads by data source",
    ["service", "source"]
)

router = APIRouter()


def endpoint_label(request: Request) -> str:
    """Route template for metric labels, so ids don't create new series."""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


# Middleware pour logger les requests avec correlation ID
async def log_requests(request: Request, call_next):
    trace_id = request.headers.get("X-Trace-ID", str(uuid.uuid4()))
    start_time = time.time()

    with logger.contextualize(trace_id=trace_id, service=SERVICE_NAME):
        logger.info(f"Request: {request.method} {request.url.path}")

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            ERROR_COUNT.labels(service=SERVICE_NAME, endpoint=endpoint_label(request), error_type="unexpected").inc()
            response = JSONResponse(status_code=500, content={"detail": "Internal server error"})

        latency = time.time() - start_time
        endpoint = endpoint_label(request)
        REQUEST_COUNT.labels(
            service=SERVICE_NAME,
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()
        REQUEST_LATENCY.labels(
            service=SERVICE_NAME,
            method=request.method,
            endpoint=endpoint
        ).observe(latency)

        logger.info(f"Response status: {response.status_code} ({latency:.3f}s)")

        response.headers["X-Trace-ID"] = trace_id
        return response


async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Invalid request on {request.url.path}: {exc.errors()}")
    ERROR_COUNT.labels(service=SERVICE_NAME, endpoint=endpoint_label(request), error_type="validation").inc()
    return JSONResponse(status_code=400, content={"detail": "Invalid request"})


def get_store(request: Request) -> ProductStore:
    return request.app.state.store


async def read_from_hana(cfg: Settings) -> Optional[List[Product]]:
    """HANA rows, or None when unavailable or slower than the query timeout."""
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(fetch_products, cfg),
            timeout=cfg.hana_query_timeout,
        )
    except asyncio.TimeoutError:
        logger.error(f"HANA read timed out after {cfg.hana_query_timeout}s")
        return None


async def load_hana_products() -> Optional[List[Product]]:
    """Rows for a read, or None when the store should serve it instead."""
    rows = await read_from_hana(get_settings())
    PRODUCT_READS.labels(service=SERVICE_NAME, source="mock" if rows is None else "hana").inc()
    return rows


def not_found(product_id: int, endpoint: str) -> HTTPException:
    logger.warning(f"Product {product_id} not found")
    ERROR_COUNT.labels(service=SERVICE_NAME, endpoint=endpoint, error_type="not_found").inc()
    return HTTPException(status_code=404, detail="Product not found")


@router.get("/metrics")
async def metrics():
    """Endpoint /metrics compatible Prometheus"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint"""
    return HealthResponse(status="healthy", service=SERVICE_NAME, timestamp=utcnow())


@router.get("/diagnose", response_model=DiagnoseResponse)
async def diagnose():
    """Reports whether HANA credentials were found and what a read returned."""
    cfg = get_settings()
    try:
        credentials_found = resolve_connection(cfg) is not None
    except ValueError:
        credentials_found = False
    rows = await read_from_hana(cfg)
    return DiagnoseResponse(
        credentials_found=credentials_found,
        rows_retrieved=len(rows) if rows is not None else 0,
        used_fallback=rows is None,
    )


@router.get("/products", response_model=List[ProductResponse])
async def get_products(request: Request):
    logger.info("Fetching all products")
    rows = await load_hana_products()
    if rows is None:
        return get_store(request).list()
    return sorted(rows, key=lambda p: p.id)


@router.get("/products/{product_id}", response_model=ProductResponse)
async def get_product(product_id: int, request: Request):
    logger.info(f"Fetching product {product_id}")
    rows = await load_hana_products()
    if rows is None:
        product = get_store(request).get(product_id)
    else:
        product = next((p for p in rows if p.id == product_id), None)
    if product is None:
        raise not_found(product_id, endpoint_label(request))
    return product


@router.post("/products", response_model=ProductResponse, status_code=201)
async def create_product(payload: ProductCreate, request: Request, response: Response):
    logger.info(f"Creating product: {payload.name}")
    product = get_store(request).create(payload.name, payload.price)
    response.headers["Location"] = request.app.url_path_for("get_product", product_id=str(product.id))
    logger.info(f"Product created with ID {product.id}")
    return product


@router.put("/products/{product_id}", response_model=ProductResponse)
async def update_product(product_id: int, payload: ProductUpdate, request: Request):
    logger.info(f"Updating product {product_id}")
    product = get_store(request).update(product_id, payload.name, payload.price)
    if product is None:
        raise not_found(product_id, endpoint_label(request))
    return product


@router.delete("/products/{product_id}")
async def delete_product(product_id: int, request: Request):
    logger.info(f"Deleting product {product_id}")
    if not get_store(request).delete(product_id):
        raise not_found(product_id, endpoint_label(request))
    return Response(status_code=200)


def create_app(cfg: Settings) -> FastAPI:
    """Build the service with a freshly seeded store, routes under `cfg.api_prefix`."""
    application = FastAPI(title="Products Service")
    application.state.store = ProductStore.seeded()
    application.middleware("http")(log_requests)
    application.add_exception_handler(RequestValidationError, validation_error_handler)
    application.include_router(router, prefix=cfg.api_prefix)
    return application


app = create_app(settings)


if __name__ == "__main__":
    logger.info(f"Starting Products Service on port {settings.port}")
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
