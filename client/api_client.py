from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
import logging
import httpx

from board_models import Board, UnmetDependency

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """서버가 거부한 호출. code는 서버 오류 코드 (네트워크 오류는 NETWORK_ERROR)"""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 0,
        unmet_dependencies: Optional[List[UnmetDependency]] = None,
        dev_message: str = "",
    ):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.status_code = status_code
        self.unmet_dependencies = unmet_dependencies or []
        self.dev_message = dev_message

    @classmethod
    def from_response(cls, resp: httpx.Response) -> "ApiError":
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = body.get("code") or f"HTTP_{resp.status_code}"
        message = body.get("message") or body.get("detail") or resp.text
        unmet = [UnmetDependency(**u) for u in body.get("unmet_dependencies", [])]
        return cls(code, str(message), resp.status_code, unmet, body.get("dev_message", ""))


class TimelinciClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.timeout = timeout
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self.client.request(method, path, headers=self.headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"[client] {method} {path} failed: {e}")
            raise ApiError("NETWORK_ERROR", str(e)) from e
        if resp.status_code >= 400:
            raise ApiError.from_response(resp)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # 사이클
    async def list_cycles(self) -> List[Dict]:
        return await self._request("GET", "/api/cycles")

    async def get_cycle(self, cycle_id: int) -> Dict:
        return await self._request("GET", f"/api/cycles/{cycle_id}")

    async def get_active_cycle(self) -> Optional[Dict]:
        return await self._request("GET", "/api/cycles/active")

    async def get_latest_board(self) -> Optional[Board]:
        data = await self._request("GET", "/api/cycles/latest")
        return Board.model_validate(data) if data else None

    async def create_cycle(self, label: str) -> Dict:
        return await self._request("POST", "/api/cycles", json={"label": label})

    async def rename_cycle(self, cycle_id: int, label: str) -> Dict:
        return await self._request("PATCH", f"/api/cycles/{cycle_id}", json={"label": label})

    async def activate_cycle(self, cycle_id: int) -> Dict:
        return await self._request("POST", f"/api/cycles/{cycle_id}/activate")

    async def complete_active_cycle(self) -> Dict:
        return await self._request("POST", "/api/cycles/complete-active")

    async def copy_services(self, target_cycle_id: int, source_cycle_id: int) -> List[int]:
        return await self._request(
            "POST", f"/api/cycles/{target_cycle_id}/copy-services", json={"source_cycle_id": source_cycle_id}
        )

    # 서비스 풀
    async def list_services(self) -> List[Dict]:
        return await self._request("GET", "/api/services")

    async def create_service(self, name: str, description: str = "") -> Dict:
        return await self._request("POST", "/api/services", json={"name": name, "description": description})

    async def update_service(self, service_id: int, name: Optional[str] = None, description: Optional[str] = None) -> Dict:
        body = {k: v for k, v in {"name": name, "description": description}.items() if v is not None}
        return await self._request("PATCH", f"/api/services/{service_id}", json=body)

    # 멤버십 / 의존성
    async def list_cycle_services(self, cycle_id: int) -> List[Dict]:
        return await self._request("GET", f"/api/cycles/{cycle_id}/services")

    async def list_available_services(self, cycle_id: int) -> List[Dict]:
        return await self._request("GET", f"/api/cycles/{cycle_id}/available-services")

    async def add_service_to_cycle(self, cycle_id: int, service_id: int) -> Dict:
        return await self._request("POST", f"/api/cycles/{cycle_id}/services", json={"service_id": service_id})

    async def remove_service_from_cycle(self, cycle_id: int, service_id: int) -> None:
        await self._request("DELETE", f"/api/cycles/{cycle_id}/services/{service_id}")

    async def list_dependencies(self, cycle_id: int, service_id: Optional[int] = None) -> List[Dict]:
        params = {"service_id": service_id} if service_id is not None else None
        return await self._request("GET", f"/api/cycles/{cycle_id}/dependencies", params=params)

    async def set_dependencies(self, cycle_id: int, service_id: int, dependency_ids: List[int]) -> List[Dict]:
        return await self._request(
            "PUT", f"/api/cycles/{cycle_id}/services/{service_id}/dependencies",
            json={"dependency_ids": list(dependency_ids)},
        )

    async def copy_dependencies(self, cycle_id: int, service_id: int, from_cycle_id: int) -> List[Dict]:
        return await self._request(
            "POST", f"/api/cycles/{cycle_id}/services/{service_id}/dependencies/copy",
            json={"from_cycle_id": from_cycle_id},
        )

    # 태스크
    async def list_tasks(self, cycle_id: int, service_id: int) -> List[Dict]:
        return await self._request("GET", f"/api/cycles/{cycle_id}/services/{service_id}/tasks")

    async def add_task(self, cycle_id: int, service_id: int, text: str) -> Dict:
        return await self._request("POST", f"/api/cycles/{cycle_id}/services/{service_id}/tasks", json={"text": text})

    async def update_task(self, cycle_id: int, service_id: int, task_id: int, text: Optional[str] = None, completed: Optional[bool] = None) -> Dict:
        body = {k: v for k, v in {"text": text, "completed": completed}.items() if v is not None}
        return await self._request("PATCH", f"/api/cycles/{cycle_id}/services/{service_id}/tasks/{task_id}", json=body)

    async def remove_task(self, cycle_id: int, service_id: int, task_id: int) -> None:
        await self._request("DELETE", f"/api/cycles/{cycle_id}/services/{service_id}/tasks/{task_id}")

    async def copy_tasks(self, cycle_id: int, service_id: int, from_cycle_id: int) -> List[Dict]:
        return await self._request(
            "POST", f"/api/cycles/{cycle_id}/services/{service_id}/tasks/copy",
            json={"from_cycle_id": from_cycle_id},
        )

    # 배포 상태
    async def apply_action(self, cycle_id: int, service_id: int, action: str) -> Dict:
        return await self._request("POST", f"/api/cycles/{cycle_id}/services/{service_id}/actions/{action}")

    async def unmet_dependencies(self, cycle_id: int, service_id: int) -> List[UnmetDependency]:
        data = await self._request("GET", f"/api/cycles/{cycle_id}/services/{service_id}/unmet-dependencies")
        return [UnmetDependency(**u) for u in data]

    # 조회
    async def get_board(self, cycle_id: int) -> Board:
        return Board.model_validate(await self._request("GET", f"/api/cycles/{cycle_id}/board"))

    async def list_deployments(self, cycle_id: int) -> List[Dict]:
        return await self._request("GET", f"/api/cycles/{cycle_id}/deployments")

    async def history(self, cycle_id: Optional[int] = None, state: Optional[str] = None, search: Optional[str] = None, limit: int = 200) -> List[Dict]:
        params = {k: v for k, v in {"cycle_id": cycle_id, "state": state, "search": search}.items() if v is not None}
        params["limit"] = limit
        return await self._request("GET", "/api/history", params=params)

    async def me(self) -> Dict:
        return await self._request("GET", "/users/me")

    @asynccontextmanager
    async def stream_events(self, cycle_id: int, read_timeout: Optional[float] = None) -> AsyncIterator[AsyncIterator[str]]:
        """SSE 스트림의 줄 단위 iterator. read_timeout 동안 아무것도 오지 않으면 httpx.ReadTimeout"""
        timeout = httpx.Timeout(self.timeout, read=read_timeout)
        async with self.client.stream(
            "GET", f"/api/cycles/{cycle_id}/events", headers=self.headers, timeout=timeout
        ) as resp:
            if resp.status_code >= 400:
                await resp.aread()
                raise ApiError.from_response(resp)
            yield resp.aiter_lines()
