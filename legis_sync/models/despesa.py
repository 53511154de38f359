from typing import Optional
from sqlmodel import Field, SQLModel, UniqueConstraint
from sqlalchemy import Index
from datetime import date, datetime

from legis_sync.core.typing import utc_now


class Despesa(SQLModel, table=True):
    """
    One reimbursed expense of a deputy's parliamentary quota.

    The natural key identifies a document installment within a month, so
    re-fetching the same month (backfill overlap, retried page) updates the
    row in place instead of duplicating it.
    """

    __tablename__ = "despesas"
    __natural_key__ = ("deputado_id", "ano", "mes", "cod_documento", "parcela")

    id: Optional[int] = Field(default=None, primary_key=True)
    deputado_id: int
    ano: int
    mes: int
    cod_documento: int = 0
    parcela: int = 0
    tipo_despesa: str = ""
    tipo_documento: Optional[str] = None
    data_documento: Optional[date] = None
    num_documento: Optional[str] = None
    nome_fornecedor: Optional[str] = None
    cnpj_cpf_fornecedor: Optional[str] = None
    valor_documento: float = 0.0
    valor_liquido: float = 0.0
    valor_glosa: float = 0.0
    url_documento: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "deputado_id", "ano", "mes", "cod_documento", "parcela", name="uq_despesas_natural_key"
        ),
        Index("ix_despesas_deputado_periodo", "deputado_id", "ano", "mes"),
    )
