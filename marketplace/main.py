import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from marketplace import config
from marketplace.db import init_db
from marketplace.errors import ShopError

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("marketplace")


# ==== FastAPI app ====
app = FastAPI(title=config.APP_NAME)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500 or exc.retriable:
        log.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ==== Routers ====
from marketplace.routers import orders, order_export, payments, transactions, cart, cron  # noqa: E402
from marketplace.services.sweeper import start_sweeper, stop_sweeper  # noqa: E402

app.include_router(orders.router)
app.include_router(order_export.router)
app.include_router(payments.router)
app.include_router(transactions.router)
app.include_router(cart.router)
app.include_router(cron.router)


@app.get("/health")
def health():
    return {"success": True, "env": config.ENV}


@app.on_event("startup")
def startup_event():
    log.info("🚀 Запуск приложения (%s)", config.ENV)
    init_db()
    start_sweeper()


@app.on_event("shutdown")
def shutdown_event():
    stop_sweeper()
