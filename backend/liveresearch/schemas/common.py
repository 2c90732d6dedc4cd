from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class APIModel(BaseModel):
    """Base model exchanging camelCase JSON with the web clients."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        protected_namespaces=(),
    )

    def to_wire(self) -> dict:
        """Dump using wire aliases in JSON-compatible form."""

        return self.model_dump(mode="json", by_alias=True)
