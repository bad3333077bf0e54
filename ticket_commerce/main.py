from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from ticket_commerce.config import settings
from ticket_commerce.database import DatabasePool
from ticket_commerce.core.logging import setup_logging
from ticket_commerce.core.exceptions import api_exception_handler, general_exception_handler, APIError
from ticket_commerce.core.middleware import request_logging_middleware

# Initialize logging
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Pool is created lazily on first use and closed on shutdown"""
    yield
    await DatabasePool.close_pool()


app = FastAPI(
    title="Ticket Commerce API",
    description="Order pricing, refunds and sales reporting for ticketed events",
    version="1.0.0",
    debug=settings.debug,
    docs_url="/docs",
    redirect_slashes=True,
    lifespan=lifespan
)

# Exception handlers
app.add_exception_handler(APIError, api_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.middleware("http")(request_logging_middleware)

# Import and include routers
from ticket_commerce.routers import orders, reports

app.include_router(orders.router, prefix="/orders", tags=["orders"])
app.include_router(reports.router, prefix="/reports", tags=["reports"])

@app.get("/")
async def root():
    return {
        "service": "Ticket Commerce API",
        "version": "1.0.0",
        "database": settings.db_name,
        "environment": settings.app_env
    }

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "database": settings.db_name,
        "host": settings.db_host
    }

# Auto-start server if run directly
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ticket_commerce.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
