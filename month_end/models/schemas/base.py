"""
Base schema shared by every reconciliation model.
"""
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    Python attributes are snake_case; the JSON documents (configuration file,
    persisted snapshots) use camelCase. Both spellings are accepted on input.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        """camelCase JSON-compatible dict."""
        return self.model_dump(mode="json", by_alias=True)
