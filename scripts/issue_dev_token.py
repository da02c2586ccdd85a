import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import argparse
from datetime import timedelta
from utils.jwt import create_access_token

# 로컬 개발용. 운영 토큰은 외부 인증 서비스가 발급


def main():
    parser = argparse.ArgumentParser(description="Issue a development bearer token")
    parser.add_argument("email")
    parser.add_argument("--minutes", type=int, default=60 * 24)
    args = parser.parse_args()
    token = create_access_token({"sub": args.email.strip().lower()}, expires_delta=timedelta(minutes=args.minutes))
    print(token)


if __name__ == "__main__":
    main()
