import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger

from chat_relay.app_config import load_json_config, parse_app_config, resolve_runtime_env
from chat_relay.bootstrap import bootstrap_runtime
from chat_relay.server import create_app


def main() -> None:
    load_dotenv()

    app_config = parse_app_config(load_json_config())
    env = resolve_runtime_env()
    runtime = bootstrap_runtime(app_config, env)

    print(f"chat-relay on http://{app_config.host}:{app_config.port}")
    print(f"Provider: {app_config.provider_name}")
    if app_config.model_name:
        print(f"Model: {app_config.model_name}")
    print(f"Database: {app_config.db_path}")
    print(f"Stream timeout: {app_config.stream_timeout_ms}ms, heartbeat: {app_config.heartbeat_interval_ms}ms")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        uvicorn.run(
            create_app(runtime),
            host=app_config.host,
            port=app_config.port,
            log_config=None,
        )
    except Exception as ex:
        logger.error(f"Server stopped: {ex}")
        sys.exit(1)


if __name__ == "__main__":
    main()
