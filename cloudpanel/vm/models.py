import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class VMState(str, enum.Enum):
    unknown = "unknown"
    stopped = "stopped"
    starting = "starting"
    running = "running"
    stopping = "stopping"


@dataclass(frozen=True)
class InstanceRef:
    """Opaque identifier of the remote compute instance"""

    project: str
    zone: str
    name: str

    def __str__(self) -> str:
        return f"{self.project}/{self.zone}/{self.name}"


@dataclass(frozen=True)
class RemoteStatus:
    """What one control-plane status query returned"""

    state: VMState
    raw_status: str = ""
    address: Optional[str] = None


@dataclass(frozen=True)
class VMSnapshot:
    status: VMState
    agent_ready: bool
    game_agent_url: Optional[str]
    address_confirmed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vmStatus": self.status.value,
            "agentReady": self.agent_ready,
            "gameAgentUrl": self.game_agent_url,
        }


@dataclass
class VMOperationResult:
    success: bool
    status: VMState
    agent_ready: bool = False
    already_running: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "status": self.status.value,
            "agentReady": self.agent_ready,
        }
        if self.already_running:
            result["alreadyRunning"] = True
        if self.error:
            result["error"] = self.error
        return result
