"""
Test fixtures for legis-sync tests.

Provides an in-memory database, a controllable clock and a scripted data
source standing in for the Câmara API.
"""

import inspect
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import legis_sync.models  # noqa: F401  (registers tables on SQLModel.metadata)

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class SleepRecorder:
    """Async sleep replacement that records delays and returns immediately."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> SleepRecorder:
    return SleepRecorder()


# handler(entity_type, filters, window, page) -> list of payloads (or awaitable, or raises)
Handler = Callable[[str, Dict[str, Any], Optional[Tuple[Any, Any]], int], Any]


class FakeDataSource:
    """DataSource whose pages are produced by a handler function."""

    def __init__(self, handler: Handler):
        self.handler = handler
        self.calls: List[Tuple[str, Dict[str, Any], Optional[Tuple[Any, Any]], int]] = []

    async def _answer(self, entity_type, filters, window, page):
        self.calls.append((entity_type, filters, window, page))
        result = self.handler(entity_type, filters, window, page)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def list_page(self, entity_type, filters=None, page=1, page_size=100):
        return await self._answer(entity_type, dict(filters or {}), None, page)

    async def list_by_window(self, entity_type, start, end, filters=None, page=1, page_size=100):
        return await self._answer(entity_type, dict(filters or {}), (start, end), page)

    async def get_by_id(self, entity_type, record_id):
        return await self._answer(entity_type, {"id": record_id}, None, 1)


def single_page(records: List[Dict[str, Any]]) -> Handler:
    """Handler serving `records` on page 1 and an empty page after."""

    def handler(entity_type, filters, window, page):
        return list(records) if page == 1 else []

    return handler


def deputado_payload(deputado_id: int, **overrides) -> Dict[str, Any]:
    payload = {
        "id": deputado_id,
        "uri": f"https://dadosabertos.camara.leg.br/api/v2/deputados/{deputado_id}",
        "nome": f"Deputado {deputado_id}",
        "siglaPartido": "PT",
        "siglaUf": "SP",
        "idLegislatura": 57,
        "urlFoto": f"https://www.camara.leg.br/internet/deputado/bandep/{deputado_id}.jpg",
        "email": f"dep{deputado_id}@camara.leg.br",
    }
    payload.update(overrides)
    return payload


def votacao_payload(votacao_id: str, **overrides) -> Dict[str, Any]:
    payload = {
        "id": votacao_id,
        "uri": f"https://dadosabertos.camara.leg.br/api/v2/votacoes/{votacao_id}",
        "data": "2023-03-14",
        "dataHoraRegistro": "2023-03-14T18:42:10",
        "siglaOrgao": "PLEN",
        "descricao": "Aprovado o requerimento.",
        "aprovacao": 1,
    }
    payload.update(overrides)
    return payload


def despesa_payload(cod_documento: int, **overrides) -> Dict[str, Any]:
    payload = {
        "ano": 2023,
        "mes": 5,
        "tipoDespesa": "COMBUSTÍVEIS E LUBRIFICANTES.",
        "codDocumento": cod_documento,
        "tipoDocumento": "Nota Fiscal Eletrônica",
        "codTipoDocumento": 4,
        "dataDocumento": "2023-05-10T00:00:00",
        "numDocumento": "123456",
        "valorDocumento": 250.5,
        "urlDocumento": "https://www.camara.leg.br/cota-parlamentar/nota-fiscal-eletronica?ideDocumentoFiscal=1",
        "nomeFornecedor": "POSTO EXEMPLO LTDA",
        "cnpjCpfFornecedor": "12345678000199",
        "valorLiquido": 250.5,
        "valorGlosa": 0,
        "numRessarcimento": "",
        "codLote": 1900000,
        "parcela": 0,
    }
    payload.update(overrides)
    return payload
