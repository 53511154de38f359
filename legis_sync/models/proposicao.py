from typing import Optional
from sqlmodel import Field, SQLModel, UniqueConstraint
from datetime import datetime

from legis_sync.core.typing import utc_now


class Proposicao(SQLModel, table=True):
    """A bill or other legislative proposal."""

    __tablename__ = "proposicoes"
    __natural_key__ = ("proposicao_id",)

    id: Optional[int] = Field(default=None, primary_key=True)
    proposicao_id: int = Field(index=True)
    sigla_tipo: str = ""
    cod_tipo: Optional[int] = None
    numero: int = 0
    ano: int = Field(default=0, index=True)
    ementa: str = ""
    data_apresentacao: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (UniqueConstraint("proposicao_id", name="uq_proposicoes_natural_key"),)
