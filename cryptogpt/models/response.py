"""统一错误响应模型"""

from http import HTTPStatus
from typing import Dict, List, Optional

from pydantic import BaseModel


class ProblemResponse(BaseModel):
    """错误响应封装：{title, status, detail | errors}"""
    title: str
    status: int
    detail: Optional[str] = None
    errors: Optional[Dict[str, List[str]]] = None

    @classmethod
    def from_status(cls, status: int, detail: Optional[str] = None) -> "ProblemResponse":
        try:
            title = HTTPStatus(status).phrase
        except ValueError:
            title = "Error"
        return cls(title=title, status=status, detail=detail)

    @classmethod
    def validation(cls, errors: Dict[str, List[str]]) -> "ProblemResponse":
        return cls(
            title="One or more validation errors occurred.",
            status=HTTPStatus.BAD_REQUEST.value,
            errors=errors,
        )

    @classmethod
    def internal(cls) -> "ProblemResponse":
        return cls(
            title="An error occurred while processing your request.",
            status=HTTPStatus.INTERNAL_SERVER_ERROR.value,
            detail="内部服务错误",
        )

    def to_content(self) -> dict:
        return self.model_dump(exclude_none=True)
