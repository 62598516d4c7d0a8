from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    version: str
    connections: int


class ConnectionInfo(BaseModel):
    user_id: int
    username: str | None = None
    connection_id: str
    connected: bool
    state: str | None = None
    connected_at: float
    last_activity: float
    in_flight: list[int] = []


class ConnectionStatus(BaseModel):
    open_connections: int
    mapped_users: int
    connections: list[ConnectionInfo]


class PruneResponse(BaseModel):
    removed_user_ids: list[int]
    remaining: int
