from __future__ import annotations

from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from snaptriage.schemas.image import ImageStatusLiteral


class RelocationPayload(BaseModel):
    """Queue message handed from a transition handler to the relocation worker.

    Serialized with camelCase keys, e.g.
    ``{"action": "move_files", "imageId": ..., "destinationPrefix": ..., "targetStatus": ..., "storeLocation": ...}``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    action: Literal["move_files"] = "move_files"
    image_id: UUID
    destination_prefix: str
    target_status: ImageStatusLiteral
    store_location: str
    project_id: UUID | None = None

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
