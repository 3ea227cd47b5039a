# screencast/schema.py
import base64
from typing import Any

from pydantic import BaseModel, Field, ConfigDict


class ContainerRecord(BaseModel):
    id:        str
    image:     str = ""
    addr:      str = ""
    cpus:      float = 0
    memory_mb: int = Field(0, alias="memoryMB")
    cdp_host:  str = Field(..., alias="cdpHost")
    cdp_port:  int = Field(9222, alias="cdpPort")
    rdp_port:  int | None = Field(None, alias="rdpPort")

    model_config = ConfigDict(
        populate_by_name=True,  # accept both camelCase JSON and python names
        frozen=True,            # records are replaced on every poll, never edited
    )

    @property
    def connection_key(self) -> str:
        """Changes only when the CDP endpoint of the container changes."""
        return f"{self.cdp_host}:{self.cdp_port}"


class TargetInfo(BaseModel):
    target_id: str = Field(..., alias="targetId")
    type:      str = "page"
    title:     str = ""
    url:       str = ""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ScreencastFrame(BaseModel):
    data:       str
    session_id: int = Field(..., alias="sessionId")   # ack id, not the CDP session
    metadata:   dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def jpeg(self) -> bytes:
        return base64.b64decode(self.data)

    @property
    def width(self) -> int:
        return int(self.metadata.get("deviceWidth") or 0)

    @property
    def height(self) -> int:
        return int(self.metadata.get("deviceHeight") or 0)
