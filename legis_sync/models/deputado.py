from typing import Optional
from sqlmodel import Field, SQLModel, UniqueConstraint
from datetime import datetime

from legis_sync.core.typing import utc_now


class Deputado(SQLModel, table=True):
    """A federal deputy as listed by the Câmara API."""

    __tablename__ = "deputados"
    __natural_key__ = ("deputado_id",)

    id: Optional[int] = Field(default=None, primary_key=True)
    deputado_id: int = Field(index=True)  # upstream id
    nome: str = ""
    sigla_partido: Optional[str] = Field(default=None, index=True)
    sigla_uf: Optional[str] = Field(default=None, index=True)
    id_legislatura: Optional[int] = None
    url_foto: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (UniqueConstraint("deputado_id", name="uq_deputados_natural_key"),)
