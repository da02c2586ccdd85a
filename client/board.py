from itertools import count
from typing import Dict, Optional, Tuple
import logging

from board_models import Board, DeploymentState
from state_machine import ACTION_ALIASES, TRANSITIONS
from .api_client import ApiError, TimelinciClient

logger = logging.getLogger(__name__)


def predicted_state(action: str) -> Optional[DeploymentState]:
    transition = TRANSITIONS.get(ACTION_ALIASES.get(action, action))
    return DeploymentState(transition.target) if transition else None


class BoardCache:
    """서버 보드의 로컬 사본. 낙관적 상태는 overlay로만 보관하고 서버 응답 후 항상 다시 조회"""

    def __init__(self, client: TimelinciClient, cycle_id: int):
        self.client = client
        self.cycle_id = cycle_id
        self.authoritative: Optional[Board] = None
        # service_id -> (요청 토큰, 예상 상태). 가장 최근 요청의 overlay만 유지
        self._overlays: Dict[int, Tuple[int, DeploymentState]] = {}
        self._tokens = count(1)

    @property
    def pending(self) -> Dict[int, DeploymentState]:
        return {sid: state for sid, (_, state) in self._overlays.items()}

    async def refresh(self) -> Board:
        self.authoritative = await self.client.get_board(self.cycle_id)
        return self.authoritative

    def view(self) -> Optional[Board]:
        if self.authoritative is None:
            return None
        board = self.authoritative.model_copy(deep=True)
        pending = self.pending
        for entry in board.deployments:
            if entry.service_id in pending:
                entry.state = pending[entry.service_id]
        return board

    def _drop_overlay(self, service_id: int, token: Optional[int]) -> None:
        # 뒤에 시작된 요청의 overlay는 건드리지 않음
        current = self._overlays.get(service_id)
        if current is not None and current[0] == token:
            del self._overlays[service_id]

    async def apply(self, service_id: int, action: str) -> Dict:
        target = predicted_state(action)
        token = None
        if target is not None:
            token = next(self._tokens)
            self._overlays[service_id] = (token, target)
        try:
            result = await self.client.apply_action(self.cycle_id, service_id, action)
        except ApiError as e:
            self._drop_overlay(service_id, token)
            logger.info(f"[board] {action} on service {service_id} rejected: {e.code}")
            try:
                await self.refresh()
            except Exception as refresh_error:
                logger.warning(f"[board] refresh after rejected {action} failed: {refresh_error}")
            raise
        self._drop_overlay(service_id, token)
        await self.refresh()
        return result
