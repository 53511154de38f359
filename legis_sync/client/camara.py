"""
Endpoint catalog for the Câmara dos Deputados open-data API (v2).

API Endpoints:
- GET /deputados - Current deputies (paginated)
- GET /deputados/{id} - Deputy details
- GET /deputados/{deputado_id}/despesas - Quota expenses, filtered by ano/mes
- GET /proposicoes - Bills, filtered by presentation date window
- GET /proposicoes/{id} - Bill details
- GET /votacoes - Votes, filtered by date window
- GET /votacoes/{id} - Vote details

Every response wraps its payload as {"dados": ..., "links": [...]}. List
endpoints accept `pagina` (1-indexed) and `itens` (max 100).
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from legis_sync.core.errors import DecodeError

MAX_PAGE_SIZE = 100

_PLACEHOLDER = re.compile(r"{(\w+)}")


@dataclass(frozen=True)
class Endpoint:
    entity_type: str
    list_path: str
    detail_path: Optional[str] = None
    window_params: Optional[Tuple[str, str]] = None  # (start, end) query params

    def list_request(self, filters: Optional[Mapping[str, Any]] = None) -> Tuple[str, Dict[str, Any]]:
        """Resolve the list path and split filters into path and query parts."""
        return fill_path(self.list_path, filters)

    def detail_request(self, record_id: Any) -> str:
        if self.detail_path is None:
            raise ValueError(f"{self.entity_type} has no detail endpoint")
        path, _ = fill_path(self.detail_path, {"id": record_id})
        return path


ENDPOINTS: Dict[str, Endpoint] = {
    "deputado": Endpoint("deputado", "/deputados", detail_path="/deputados/{id}"),
    "despesa": Endpoint("despesa", "/deputados/{deputado_id}/despesas"),
    "proposicao": Endpoint(
        "proposicao",
        "/proposicoes",
        detail_path="/proposicoes/{id}",
        window_params=("dataApresentacaoInicio", "dataApresentacaoFim"),
    ),
    "votacao": Endpoint(
        "votacao",
        "/votacoes",
        detail_path="/votacoes/{id}",
        window_params=("dataInicio", "dataFim"),
    ),
}


def get_endpoint(entity_type: str) -> Endpoint:
    try:
        return ENDPOINTS[entity_type]
    except KeyError:
        raise ValueError(f"unknown entity type {entity_type!r}") from None


def fill_path(template: str, filters: Optional[Mapping[str, Any]] = None) -> Tuple[str, Dict[str, Any]]:
    """
    Substitute {placeholders} in `template` from `filters`.

    Returns the concrete path and the filters that were not consumed, which
    become query parameters. None-valued filters are dropped.

    Example:
        fill_path("/deputados/{deputado_id}/despesas", {"deputado_id": 204554, "ano": 2023})
        -> ("/deputados/204554/despesas", {"ano": 2023})
    """
    params = {k: v for k, v in (filters or {}).items() if v is not None}

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in params:
            raise ValueError(f"missing path parameter {name!r} for {template}")
        return str(params.pop(name))

    path = _PLACEHOLDER.sub(_replace, template)
    return path, params


def extract_dados(payload: Any, url: str, expect: type = list) -> Any:
    """Unwrap the {"dados": ...} envelope, checking the payload shape."""
    if not isinstance(payload, dict):
        raise DecodeError(url, f"expected a JSON object, got {type(payload).__name__}")
    if "dados" not in payload:
        raise DecodeError(url, "missing 'dados' envelope")
    dados = payload["dados"]
    if not isinstance(dados, expect):
        raise DecodeError(url, f"'dados' should be a {expect.__name__}, got {type(dados).__name__}")
    if expect is list and not all(isinstance(item, dict) for item in dados):
        raise DecodeError(url, "'dados' list contains non-object items")
    return dados
