"""Task settings Pydantic models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class SettingsCategory(StrEnum):
    HTTP_PROXY = "httpProxy"


DATACENTER_PROXIES = "datacenterProxies"


class HttpProxyCreate(BaseModel):
    entry_point: str = Field(min_length=1)
    ip: str = Field(min_length=1)
    port: int = Field(ge=0, le=65535)
    country_code: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)

    @property
    def http_proxy(self) -> str:
        return f"http://{self.username}:{self.password}@{self.entry_point}:{self.port}"


class HttpProxySetting(BaseModel):
    id: str
    category: SettingsCategory = SettingsCategory.HTTP_PROXY
    product: str = DATACENTER_PROXIES
    username: str
    password: str
    entry_point: str
    port: str
    country: str = ""
    assigned_ip: str = ""
    http_proxy: str
    count: int = 0  # tasks using this proxy
