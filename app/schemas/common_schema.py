from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """通用接口响应包装。"""

    code: int = 200
    msg: str = "success"
    data: T

    model_config = ConfigDict(populate_by_name=True)
