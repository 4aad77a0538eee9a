"""
Pydantic models for MongoDB version metadata (catalog.kubedb.com MongoDBVersion).
"""
from typing import Any, Dict

from pydantic import Field

from dbaas_operator.models.database import KubeModel, ObjectMeta

CATALOG_GROUP = "catalog.kubedb.com"
CATALOG_VERSION = "v1alpha1"
CATALOG_PLURAL = "mongodbversions"


class ImageRef(KubeModel):
    image: str = ""


class MongoDBVersionSpec(KubeModel):
    version: str = ""
    db: ImageRef = Field(default_factory=ImageRef)
    init_container: ImageRef = Field(default_factory=ImageRef)
    exporter: ImageRef = Field(default_factory=ImageRef)
    deprecated: bool = False


class MongoDBVersion(KubeModel):
    """Image references and flags for one engine version."""

    metadata: ObjectMeta
    spec: MongoDBVersionSpec = Field(default_factory=MongoDBVersionSpec)

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "MongoDBVersion":
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    def missing_images(self) -> list[str]:
        """Image references that are required but empty."""
        missing = []
        if not self.spec.db.image:
            missing.append("spec.db.image")
        if not self.spec.init_container.image:
            missing.append("spec.initContainer.image")
        if not self.spec.exporter.image:
            missing.append("spec.exporter.image")
        return missing
