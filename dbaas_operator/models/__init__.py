from dbaas_operator.models.database import MongoDB, Phase, StorageType, TerminationPolicy
from dbaas_operator.models.version import MongoDBVersion

__all__ = [
    "MongoDB",
    "MongoDBVersion",
    "Phase",
    "StorageType",
    "TerminationPolicy",
]
