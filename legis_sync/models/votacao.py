from typing import Optional
from sqlmodel import Field, SQLModel, UniqueConstraint
from datetime import date, datetime

from legis_sync.core.typing import utc_now


class Votacao(SQLModel, table=True):
    """A floor or committee vote. Upstream ids look like "2265603-43"."""

    __tablename__ = "votacoes"
    __natural_key__ = ("votacao_id",)

    id: Optional[int] = Field(default=None, primary_key=True)
    votacao_id: str = Field(index=True)
    data: Optional[date] = Field(default=None, index=True)
    data_hora_registro: Optional[datetime] = None
    sigla_orgao: Optional[str] = None
    descricao: str = ""
    aprovacao: Optional[bool] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (UniqueConstraint("votacao_id", name="uq_votacoes_natural_key"),)
