import os
from dotenv import load_dotenv

# .env 파일에서 환경변수 로드
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./timelinci.db")

# JWT 설정 (토큰 발급은 외부 인증 서비스 담당)
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# 허용 도메인의 신규 사용자에게 부여할 기본 역할
DEFAULT_MEMBER_ROLE = os.getenv("DEFAULT_MEMBER_ROLE", "EDITOR").upper()

# SSE keep-alive 주기(초)
EVENT_KEEPALIVE_SECONDS = float(os.getenv("EVENT_KEEPALIVE_SECONDS", "15"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
