from .deputado import Deputado
from .despesa import Despesa
from .proposicao import Proposicao
from .votacao import Votacao
from .sync_run import SyncRun, RunStatus

# Entity type -> table for every record the pipeline persists
ENTITY_MODELS = {
    "deputado": Deputado,
    "despesa": Despesa,
    "proposicao": Proposicao,
    "votacao": Votacao,
}

__all__ = [
    "Deputado",
    "Despesa",
    "Proposicao",
    "Votacao",
    "SyncRun",
    "RunStatus",
    "ENTITY_MODELS",
]
