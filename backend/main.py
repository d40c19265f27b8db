from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
from contextlib import asynccontextmanager
from mangum import Mangum
from config import ENVIRONMENT, LOG_LEVEL, AUTO_CREATE_TABLES, CORS_ORIGINS, FRONTEND_URL, init_db
from models import utcnow
from realtime_chat.connection_manager import manager
from utils.errors import register_exception_handlers
from utils.response_helpers import success_response
import logging

from routers.auth.auth import router as auth_router
from routers.users.users import router as users_router
from routers.products.products import router as products_router
from routers.orders.orders import router as orders_router
from routers.payments.payments import router as payments_router
from routers.chat.chat import router as chat_router
from routers.notifications.notifications import router as notifications_router
from routers.reviews.reviews import router as reviews_router
from routers.transporters.transporters import router as transporters_router
from routers.admin.admin import router as admin_router
from realtime_chat.socket import router as socket_router

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

IS_PRODUCTION = ENVIRONMENT == "prod"


@asynccontextmanager
async def lifespan(app: FastAPI):
    if AUTO_CREATE_TABLES:
        logger.info("Creating database tables")
        await init_db()
    yield


app = FastAPI(
    title="AgroConnect API",
    description="Marketplace API connecting farmers, suppliers, buyers and transporters.",
    version="1.0.0",
    root_path="/Prod" if IS_PRODUCTION else "",
    docs_url="/apidocs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(products_router)
app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(chat_router)
app.include_router(notifications_router)
app.include_router(reviews_router)
app.include_router(transporters_router)
app.include_router(admin_router)
app.include_router(socket_router)


@app.get("/health", tags=["Health"])
async def health_check():
    return success_response({
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "environment": ENVIRONMENT,
        "online_users": manager.active_connections,
    })


@app.get("/docs", include_in_schema=False)
async def api_documentation(request: Request):
    openapi_url = "/Prod/openapi.json" if IS_PRODUCTION else "/openapi.json"

    return HTMLResponse(
        f"""
<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1, shrink-to-fit=no">
    <title>AgroConnect API Docs</title>
    <script src="https://unpkg.com/@stoplight/elements/web-components.min.js"></script>
    <link rel="stylesheet" href="https://unpkg.com/@stoplight/elements/styles.min.css">
  </head>
  <body>
    <elements-api apiDescriptionUrl="{openapi_url}" router="hash" />
  </body>
</html>"""
    )


@app.get("/", response_class=HTMLResponse, include_in_schema=False)
def home():
    return f"""
    <html>
      <head><title>AgroConnect API</title></head>
      <body style="font-family: Arial, sans-serif; margin: 40px;">
        <h1>AgroConnect API</h1>
        <ul>
          <li><a href="/docs">API documentation</a></li>
          <li><a href="/apidocs">Swagger UI</a></li>
          <li><a href="/openapi.json">OpenAPI specification</a></li>
          <li><a href="{FRONTEND_URL}">Marketplace</a></li>
        </ul>
      </body>
    </html>
    """


# AWS Lambda entry point
handler = Mangum(app, lifespan="off")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=not IS_PRODUCTION)
