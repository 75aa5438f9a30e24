from pydantic import BaseModel


class RoomDetailsResponse(BaseModel):
    room_address: str
    online_users_count: int
    history_size: int


class HealthResponse(BaseModel):
    status: str = "ok"
