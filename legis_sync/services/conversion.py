"""
Conversion of upstream payloads into table rows.

Each entity type has an explicit pydantic schema describing the fields we
read from the Câmara API (camelCase aliases), so an unexpected payload shape
fails loudly for one record instead of crashing a sync:

- unknown fields are ignored
- a missing field takes the schema default and is logged as a warning
- missing key fields or uncoercible values raise ConversionError, and the
  orchestrator counts the record as skipped
"""

import re
from datetime import date, datetime
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlmodel import SQLModel

from legis_sync.core.errors import ConversionError
from legis_sync.core.logging_config import get_logger
from legis_sync.models import Deputado, Despesa, Proposicao, Votacao

logger = get_logger(__name__)

_BR_DATE = re.compile(r"^(\d{2})/(\d{2})/(\d{4})")


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse ISO ("2024-01-15", "2024-01-15T10:00:00") and Brazilian
    ("15/01/2024") dates. Unparseable values become None with a warning.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    match = _BR_DATE.match(text)
    try:
        if match:
            day, month, year = (int(g) for g in match.groups())
            return datetime(year, month, day)
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning("unparseable date, storing null", value=text)
        return None


def parse_date(value: Any) -> Optional[date]:
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


def parse_money(value: Any) -> float:
    """
    Parse a monetary value: numbers as-is, strings in Brazilian format.

    Example:
        parse_money("R$ 1.234,56") -> 1234.56
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ValueError("boolean is not a monetary value")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).replace("R$", "").replace("\xa0", "").replace(" ", "")
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    return float(text)


class PayloadSchema(BaseModel):
    """Base for upstream payload schemas."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Fields the upstream legitimately omits (no warning when absent)
    optional_fields: ClassVar[Tuple[str, ...]] = ()

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in type(self).model_fields
            if name not in self.model_fields_set and name not in self.optional_fields
        ]


class DeputadoPayload(PayloadSchema):
    deputado_id: int = Field(alias="id")
    nome: str = ""
    sigla_partido: Optional[str] = Field(default=None, alias="siglaPartido")
    sigla_uf: Optional[str] = Field(default=None, alias="siglaUf")
    id_legislatura: Optional[int] = Field(default=None, alias="idLegislatura")
    url_foto: Optional[str] = Field(default=None, alias="urlFoto")
    email: Optional[str] = None

    optional_fields = ("email",)


class DespesaPayload(PayloadSchema):
    deputado_id: int
    ano: int
    mes: int = Field(ge=1, le=12)
    cod_documento: int = Field(default=0, alias="codDocumento")
    parcela: int = 0
    tipo_despesa: str = Field(default="", alias="tipoDespesa")
    tipo_documento: Optional[str] = Field(default=None, alias="tipoDocumento")
    data_documento: Optional[date] = Field(default=None, alias="dataDocumento")
    num_documento: Optional[str] = Field(default=None, alias="numDocumento")
    nome_fornecedor: Optional[str] = Field(default=None, alias="nomeFornecedor")
    cnpj_cpf_fornecedor: Optional[str] = Field(default=None, alias="cnpjCpfFornecedor")
    valor_documento: float = Field(default=0.0, alias="valorDocumento")
    valor_liquido: float = Field(default=0.0, alias="valorLiquido")
    valor_glosa: float = Field(default=0.0, alias="valorGlosa")
    url_documento: Optional[str] = Field(default=None, alias="urlDocumento")

    optional_fields = ("url_documento", "num_documento")

    @field_validator("data_documento", mode="before")
    @classmethod
    def _date(cls, value: Any) -> Optional[date]:
        return parse_date(value)

    @field_validator("valor_documento", "valor_liquido", "valor_glosa", mode="before")
    @classmethod
    def _money(cls, value: Any) -> float:
        return parse_money(value)

    @field_validator("num_documento", "cnpj_cpf_fornecedor", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)


class ProposicaoPayload(PayloadSchema):
    proposicao_id: int = Field(alias="id")
    sigla_tipo: str = Field(default="", alias="siglaTipo")
    cod_tipo: Optional[int] = Field(default=None, alias="codTipo")
    numero: int = 0
    ano: int = 0
    ementa: str = ""
    data_apresentacao: Optional[datetime] = Field(default=None, alias="dataApresentacao")

    # The list endpoint only carries dataApresentacao on detail responses
    optional_fields = ("data_apresentacao",)

    @field_validator("data_apresentacao", mode="before")
    @classmethod
    def _datetime(cls, value: Any) -> Optional[datetime]:
        return parse_datetime(value)


class VotacaoPayload(PayloadSchema):
    votacao_id: str = Field(alias="id")
    data: Optional[date] = None
    data_hora_registro: Optional[datetime] = Field(default=None, alias="dataHoraRegistro")
    sigla_orgao: Optional[str] = Field(default=None, alias="siglaOrgao")
    descricao: str = ""
    aprovacao: Optional[bool] = None

    optional_fields = ("aprovacao",)

    @field_validator("votacao_id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("data", mode="before")
    @classmethod
    def _date(cls, value: Any) -> Optional[date]:
        return parse_date(value)

    @field_validator("data_hora_registro", mode="before")
    @classmethod
    def _datetime(cls, value: Any) -> Optional[datetime]:
        return parse_datetime(value)


SCHEMAS: Dict[str, Tuple[Type[PayloadSchema], Type[SQLModel]]] = {
    "deputado": (DeputadoPayload, Deputado),
    "despesa": (DespesaPayload, Despesa),
    "proposicao": (ProposicaoPayload, Proposicao),
    "votacao": (VotacaoPayload, Votacao),
}


def convert(
    entity_type: str,
    payload: Mapping[str, Any],
    context: Optional[Mapping[str, Any]] = None,
) -> SQLModel:
    """
    Convert one upstream payload into an unsaved table row.

    Args:
        entity_type: Key of SCHEMAS
        payload: One item of the upstream "dados" list
        context: Fields the payload does not carry itself, e.g. the
            deputado_id of an expense fetched from /deputados/{id}/despesas

    Raises:
        ConversionError: key fields missing or values of the wrong type
    """
    try:
        schema, model = SCHEMAS[entity_type]
    except KeyError:
        raise ValueError(f"unknown entity type {entity_type!r}") from None
    if not isinstance(payload, Mapping):
        raise ConversionError(entity_type, f"expected an object, got {type(payload).__name__}")

    data = {**payload, **(context or {})}
    try:
        parsed = schema.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ConversionError(entity_type, problems) from e

    missing = parsed.missing_fields()
    if missing:
        logger.warning("payload missing fields, using defaults", entity_type=entity_type, fields=missing)

    return model(**parsed.model_dump())
