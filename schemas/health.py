from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str


class StatsResponse(BaseModel):
    sessions: int
    host_connections: int
    web_connections: int
    registered_codes: int
