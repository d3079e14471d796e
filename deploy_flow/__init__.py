"""
deploy_flow
-----------

의존성 기반 배포 오케스트레이터.
선언된 스텝(DB 프로비저닝, 이미지 임포트, 매니페스트 적용, 마이그레이션 등)을
DAG 로 컴파일하고, 멱등하게 실행/재시도/재개한 뒤 헬스체크로 검증한다.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "planner",
    "orchestrator",
]
