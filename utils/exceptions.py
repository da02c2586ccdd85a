from fastapi import HTTPException
from typing import List, Optional


class CustomException(HTTPException):
    def __init__(self, code: str, message: str, dev_message: str = "", status_code: int = 400, detail: str = ""):
        super().__init__(status_code=status_code, detail=message)
        self.code = code
        self.message = message
        self.dev_message = dev_message
        self.detail = detail

    def to_dict(self):
        return {
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
            "dev_message": self.dev_message
        }

    def __str__(self):
        return f"[{self.code}] {self.dev_message or self.message}"


# 입력값 오류: 호출자가 수정 가능
class ValidationFailed(CustomException):
    def __init__(self, code: str, message: str, dev_message: str = "", detail: str = ""):
        super().__init__(code, message, dev_message=dev_message, status_code=400, detail=detail)


class NotFound(CustomException):
    def __init__(self, code: str, message: str, dev_message: str = "", detail: str = ""):
        super().__init__(code, message, dev_message=dev_message, status_code=404, detail=detail)


# 현재 상태에서 허용되지 않는 작업
class StateConflict(CustomException):
    def __init__(self, code: str, message: str, dev_message: str = "", detail: str = ""):
        super().__init__(code, message, dev_message=dev_message, status_code=409, detail=detail)


class ReferentialError(CustomException):
    def __init__(self, code: str, message: str, dev_message: str = "", detail: str = ""):
        super().__init__(code, message, dev_message=dev_message, status_code=422, detail=detail)


class DependenciesNotDeployed(StateConflict):
    """의존 서비스가 모두 deployed 상태가 아니어서 전이가 거부됨"""

    def __init__(self, service_name: str, unmet: List, dev_message: str = ""):
        names = ", ".join(u.service_name for u in unmet)
        super().__init__(
            code="DEPENDENCIES_NOT_DEPLOYED",
            message=f"{service_name}의 의존 서비스가 아직 배포되지 않았습니다: {names}",
            dev_message=dev_message,
            detail=names,
        )
        self.service_name = service_name
        self.unmet = list(unmet)

    def to_dict(self):
        data = super().to_dict()
        data["unmet_dependencies"] = [u.model_dump() for u in self.unmet]
        return data


def cycle_not_found(cycle_id) -> NotFound:
    return NotFound(
        code="CYCLE_NOT_FOUND",
        message="배포 사이클을 찾을 수 없습니다.",
        dev_message=f"DeploymentCycle(id={cycle_id}) not found for tenant",
    )


def service_not_found(service_id) -> NotFound:
    return NotFound(
        code="SERVICE_NOT_FOUND",
        message="서비스를 찾을 수 없습니다.",
        dev_message=f"Service(id={service_id}) not found for tenant",
    )


def service_not_in_cycle(cycle_id, service_id) -> NotFound:
    return NotFound(
        code="SERVICE_NOT_IN_CYCLE",
        message="해당 사이클에 포함되지 않은 서비스입니다.",
        dev_message=f"Service(id={service_id}) is not a member of cycle {cycle_id}",
    )


def completed_cycle(cycle_id, label: Optional[str] = None) -> StateConflict:
    return StateConflict(
        code="CANNOT_UPDATE_COMPLETED_CYCLE",
        message="완료된 사이클은 수정할 수 없습니다.",
        dev_message=f"DeploymentCycle(id={cycle_id}, label={label}) is completed",
    )
