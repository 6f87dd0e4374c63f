"""SmallTalk 프로덕션 안정성 레이어

세션 영속화, 에이전트 헬스 모니터링, 이벤트 버스, 그룹 대화 턴 조율.
"""

__version__ = "1.0.0"
