"""
Configuración global de pytest y fixtures compartidos.
"""
import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from unittest.mock import patch

from ticket_commerce.main import app
from tests.utils.mocks import MockDBConnection, MockDBContextManager


# Modulos que abren conexiones con get_db_connection
DB_MODULES = [
    'ticket_commerce.services.order_builder_service',
    'ticket_commerce.services.orders_service',
    'ticket_commerce.services.refund_service',
    'ticket_commerce.services.sales_report_service',
]


# ============================================================================
# Cliente HTTP Async
# ============================================================================

@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Cliente HTTP async para hacer requests al API."""
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ============================================================================
# Mock de Base de Datos
# ============================================================================

@pytest.fixture
def mock_db_connection() -> MockDBConnection:
    """Conexión mock compartida por todos los servicios del test."""
    return MockDBConnection()


@pytest.fixture(autouse=True)
def mock_db(mock_db_connection):
    """Ningún test toca una base de datos real."""
    patches = [
        patch(f'{module}.get_db_connection', return_value=MockDBContextManager(mock_db_connection))
        for module in DB_MODULES
    ]
    for p in patches:
        p.start()
    yield mock_db_connection
    for p in reversed(patches):
        p.stop()


# ============================================================================
# Utilidades
# ============================================================================

@pytest.fixture
def make_db_row():
    """Factory para crear rows de base de datos."""
    def _make_row(data: dict):
        """Crea un objeto que actúa como asyncpg Record."""
        class MockRecord(dict):
            def __getitem__(self, key):
                return self.get(key)

        return MockRecord(data)

    return _make_row
