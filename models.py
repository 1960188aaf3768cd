import re
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_ALLOW_FROM = ["127.0.0.1", "::1"]

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]+")


def clean_config_name(name: str) -> str:
    """Replace every run of non-alphanumeric characters with a single dash"""
    return _NON_ALPHANUMERIC.sub("-", name)


class SingleAddress(BaseModel):
    """Legacy allowlist form: exactly one permitted address"""

    model_config = ConfigDict(frozen=True)

    address: str

    def allows(self, client_ip: Optional[str]) -> bool:
        return client_ip == self.address


class AddressList(BaseModel):
    """Allowlist of permitted addresses (exact string match)"""

    model_config = ConfigDict(frozen=True)

    addresses: Tuple[str, ...]

    def allows(self, client_ip: Optional[str]) -> bool:
        return client_ip in self.addresses


AllowFrom = Union[SingleAddress, AddressList]


class RegistryAuth(BaseModel):
    """Registry credentials used when pulling an image"""

    model_config = ConfigDict(frozen=True)

    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None
    serveraddress: Optional[str] = None

    def as_auth_config(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True)


class ConfigEntry(BaseModel):
    """One launchable workload and the key that triggers it"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    raw_name: str = Field(default="", alias="name")
    key: str = ""
    image: str = ""
    auth: Optional[RegistryAuth] = None
    allow_from: AllowFrom = Field(
        default_factory=lambda: AddressList(addresses=tuple(DEFAULT_ALLOW_FROM)),
        alias="allowFrom",
    )
    cmd: List[str] = Field(default_factory=list)
    query_params_to_env: List[str] = Field(default_factory=list, alias="queryParamsToEnv")
    create_options: Dict[str, Any] = Field(default_factory=dict, alias="createOptions")
    limit: int = Field(default=1, ge=1)

    @field_validator("allow_from", mode="before")
    @classmethod
    def parse_allow_from(cls, value):
        if value is None:
            return AddressList(addresses=tuple(DEFAULT_ALLOW_FROM))
        if isinstance(value, str):
            return SingleAddress(address=value)
        if isinstance(value, (list, tuple)):
            return AddressList(addresses=tuple(str(v) for v in value))
        return value

    @field_validator("cmd", "query_params_to_env", mode="before")
    @classmethod
    def none_is_empty_list(cls, value):
        return [] if value is None else value

    @field_validator("limit", mode="before")
    @classmethod
    def none_is_default_limit(cls, value):
        return 1 if value is None else value

    @field_validator("create_options", mode="before")
    @classmethod
    def normalise_create_options(cls, value):
        if value is None:
            return {}
        options = dict(value)
        # "env" is the older spelling
        if "env" in options:
            legacy = options.pop("env")
            options.setdefault("environment", legacy)
        env = options.get("environment")
        if isinstance(env, dict):
            options["environment"] = [f"{k}={v}" for k, v in env.items()]
        elif env is None:
            options.pop("environment", None)
        else:
            options["environment"] = list(env)
        return options

    @property
    def name(self) -> str:
        """Unique tracking name; non-alphanumeric runs replaced with dashes"""
        return clean_config_name(self.raw_name)

    @property
    def environment(self) -> List[str]:
        return list(self.create_options.get("environment", []))


class DockerConnectOptions(BaseModel):
    """How to reach the Docker daemon"""

    model_config = ConfigDict(populate_by_name=True)

    socket_path: Optional[str] = Field(default=None, alias="socketPath")
    host: Optional[str] = None
    port: Optional[int] = None
    protocol: str = "http"
    version: Optional[str] = None
    timeout: Optional[int] = None

    def base_url(self) -> Optional[str]:
        if self.socket_path:
            return f"unix://{self.socket_path}"
        if self.host:
            scheme = "https" if self.protocol == "https" else "tcp"
            port = self.port or (2376 if scheme == "https" else 2375)
            return f"{scheme}://{self.host}:{port}"
        return None


class ProxyOptions(BaseModel):
    """Trusted reverse proxies in front of the kicker"""

    model_config = ConfigDict(populate_by_name=True)

    proxy_list: List[str] = Field(default_factory=list, alias="proxyList")
    proxy_count: int = Field(default=0, ge=0, alias="proxyCount")

    @property
    def configured(self) -> bool:
        return bool(self.proxy_list) or self.proxy_count > 0


class ConnectConfig(BaseModel):
    """Container runtime connection plus proxy trust settings"""

    docker: DockerConnectOptions = Field(default_factory=DockerConnectOptions)
    proxy: Optional[ProxyOptions] = None
