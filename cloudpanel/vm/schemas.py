from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from cloudpanel.vm.models import VMState


class CamelModel(BaseModel):
    """Serialized with camelCase keys, the panel UI's wire format"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InactivityStatus(CamelModel):
    running: bool
    timeout_minutes: float
    warning_minutes: float
    web_idle_minutes: int
    player_idle_minutes: int
    last_player_count: int
    time_until_shutdown_minutes: int


class VMStatusResponse(CamelModel):
    vm_status: VMState
    agent_ready: bool
    game_agent_url: Optional[str] = None
    inactivity: InactivityStatus


class VMOperationResponse(CamelModel):
    success: bool
    status: VMState
    agent_ready: bool = False
    already_running: bool = False
    error: Optional[str] = None
