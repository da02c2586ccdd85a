import asyncio
import argparse
import logging
import uvicorn
from core.config import LOG_LEVEL
from core.db import init_engine, create_tables, dispose_engine
from api.rest import app as rest_app

logger = logging.getLogger(__name__)


async def init_db():
    init_engine()
    await create_tables()
    await dispose_engine()
    logger.info("[main] tables created")


async def main():
    parser = argparse.ArgumentParser(description="Timelin-CI")
    parser.add_argument("--host", default="0.0.0.0", help="REST API host")
    parser.add_argument("--rest-port", type=int, default=8000, help="REST API port")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level")
    parser.add_argument("--init-db", action="store_true", help="Create tables before serving (development only)")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.init_db:
        await init_db()

    config = uvicorn.Config(rest_app, host=args.host, port=args.rest_port, log_level=args.log_level.lower())
    server = uvicorn.Server(config)
    logger.info(f"REST API starting on port {args.rest_port}")
    try:
        await server.serve()
    except KeyboardInterrupt:
        logger.info("Shutting down server...")


if __name__ == "__main__":
    asyncio.run(main())
