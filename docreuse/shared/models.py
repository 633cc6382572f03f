from pydantic import BaseModel, ConfigDict


class ReuseBaseModel(BaseModel):
    model_config = ConfigDict(
        protected_namespaces=(),
        arbitrary_types_allowed=True,
    )
