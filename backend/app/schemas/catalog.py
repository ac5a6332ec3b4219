from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class _CamelModel(BaseModel):
    # Wire format uses camelCase, Python code uses snake_case
    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        # Model output often spells an absent field as null; treat it as unset
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class HeaderPair(_CamelModel):
    """
    A named key/value entry for an HTTP header of a URL-based server.
    """
    key: Optional[str] = None
    value: Optional[str] = None
    name: str = ""
    description: str = ""
    required: bool = False
    sensitive: bool = False


class EnvPair(HeaderPair):
    """
    An environment variable of a command-based server.
    `file` is True when the value refers to a file path.
    """
    file: bool = False


class ServerConfig(_CamelModel):
    """
    One launch variant of an MCP server.

    Either command-based (command/args/env) or URL-based
    (url/urlDescription/httpHeaders), never both.
    """
    env: List[EnvPair] = Field(default_factory=list)
    command: Optional[str] = None
    args: Optional[List[str]] = None
    http_headers: Optional[List[HeaderPair]] = Field(default=None, alias="httpHeaders")
    url: Optional[str] = None
    url_description: Optional[str] = Field(default=None, alias="urlDescription")
    preferred: bool = False

    @model_validator(mode="after")
    def check_launcher_shape(self) -> "ServerConfig":
        if self.command and self.url:
            raise ValueError("A server config is either command-based or URL-based, not both")
        if not self.command and not self.url:
            raise ValueError("A server config needs a command or a url")
        return self

    @property
    def is_command_based(self) -> bool:
        return bool(self.command)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ToolProperty(_CamelModel):
    type: str = "string"
    description: str = ""
    required: bool = False


class InputSchema(_CamelModel):
    # Parameter name -> {type, description, required}
    properties: Dict[str, ToolProperty] = Field(default_factory=dict)


class ToolDescriptor(_CamelModel):
    name: str
    description: str = ""
    input_schema: InputSchema = Field(default_factory=InputSchema, alias="inputSchema")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ManifestAnalysis(_CamelModel):
    """Structured result of analysing one README."""
    name: str = ""
    description: str = ""
    category: str = ""
    configs: List[ServerConfig] = Field(default_factory=list)


def dump_configs(configs: List[ServerConfig]) -> List[Dict[str, Any]]:
    return [config.to_json() for config in configs]


def dump_tools(tools: List[ToolDescriptor]) -> List[Dict[str, Any]]:
    return [tool.to_json() for tool in tools]
