from agentrelay.const import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_HOST,
    DEFAULT_PROXY_PORT,
    DEFAULT_CLIENT_PORT,
    DEFAULT_BRIDGE_PORT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_LOGS_DIR,
    BRIDGE_COMMAND,
    BRIDGE_PACKAGE,
    BRIDGE_READY_ATTEMPTS,
    BRIDGE_READY_INTERVAL,
    BRIDGE_CHECK_TIMEOUT,
    NGROK_BINARY,
    NGROK_API_URL,
    TUNNEL_STARTUP_TIMEOUT,
    TUNNEL_STARTUP_GRACE,
    TUNNEL_POLL_INTERVAL,
    HOST_ENV,
    PORT_ENV,
    CLIENT_PORT_ENV,
    ALLOWED_ORIGINS_ENV,
    OMIT_AUTH_ENV,
    AUTH_TOKEN_ENV,
    BRIDGE_PORT_ENV,
    DEFAULT_ENV_VARS_ENV,
    NGROK_BINARY_ENV,
    LOG_LEVEL_ENV,
    LOGS_PATH_ENV,
)
from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Optional, Union
from pathlib import Path
import json
import yaml
import os

class TunnelConfig(BaseModel):
    binary :str=NGROK_BINARY
    api_url :str=NGROK_API_URL
    startup_timeout :float=TUNNEL_STARTUP_TIMEOUT
    startup_grace :float=TUNNEL_STARTUP_GRACE
    poll_interval :float=TUNNEL_POLL_INTERVAL

    @field_validator("startup_timeout", "poll_interval")
    @classmethod
    def ensure_positive(cls, value :float)->float:
        assert value > 0, "tunnel timings must be positive"
        return value

class RelayConfig(BaseModel):
    host :str=DEFAULT_HOST
    port :int=DEFAULT_PROXY_PORT
    client_port :int=DEFAULT_CLIENT_PORT
    allowed_origins :Optional[List[str]]=None
    auth_disabled :bool=False
    auth_token :Optional[str]=None
    bridge_port :int=DEFAULT_BRIDGE_PORT
    bridge_command :str=BRIDGE_COMMAND
    bridge_package :str=BRIDGE_PACKAGE
    bridge_ready_attempts :int=BRIDGE_READY_ATTEMPTS
    bridge_ready_interval :float=BRIDGE_READY_INTERVAL
    bridge_check_timeout :float=BRIDGE_CHECK_TIMEOUT
    default_command :str=""
    default_args :str=""
    default_environment :Dict[str, str]=Field(default_factory=dict)
    tunnel :TunnelConfig=Field(default_factory=TunnelConfig)
    log_level :str=DEFAULT_LOG_LEVEL
    logs_dir :Optional[str]=DEFAULT_LOGS_DIR

    @field_validator("port", "client_port", "bridge_port")
    @classmethod
    def ensure_valid_port(cls, port :int)->int:
        assert 0 < port < 65536, f"{port} is not a valid TCP port"
        return port

    @field_validator("bridge_ready_attempts")
    @classmethod
    def ensure_at_least_one_attempt(cls, attempts :int)->int:
        assert attempts >= 1, "bridge_ready_attempts should be at least 1"
        return attempts

    @field_validator("bridge_ready_interval", "bridge_check_timeout")
    @classmethod
    def ensure_positive_interval(cls, value :float)->float:
        assert value > 0, "bridge timings must be positive"
        return value

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def split_origins(cls, origins :Optional[Union[str, List[str]]])->Optional[List[str]]:
        if isinstance(origins, str):
            origins = [origin.strip() for origin in origins.split(",") if origin.strip()]
        return origins or None

    @property
    def allowed_origins_list(self)->List[str]:
        if self.allowed_origins:
            return list(self.allowed_origins)
        return [
            f"http://localhost:{self.client_port}",
            f"http://127.0.0.1:{self.client_port}",
        ]

    @property
    def bridge_base_url(self)->str:
        return f"http://localhost:{self.bridge_port}"

    @classmethod
    def from_yaml(cls, config_path: Optional[Union[str, Path]] = None) -> "RelayConfig":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file. If None, it will try to use
                        the CONFIG_PATH environment variable or the default path.

        Returns:
            RelayConfig: Configuration object with settings from the YAML file.

        Raises:
            FileNotFoundError: If the configuration file doesn't exist.
        """
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH
        config_path = Path(config_path)

        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}. Please ensure the file exists and the path is correct.")

        with open(config_path, "r") as _file:
            yaml_config = yaml.safe_load(_file) or {}

        return cls(**yaml_config)

    @staticmethod
    def get_env_var(key: str, required: bool = False) -> Optional[str]:
        value = os.getenv(key)
        if required and not value:
            raise ValueError(f"Environment variable {key} is required but not set or empty.")
        return value

    @classmethod
    def from_environment(cls) -> "RelayConfig":
        """
        Load configuration from environment variables.

        Every variable is optional; unset variables fall back to the defaults in
        ``agentrelay.const``. ``MCP_ENV_VARS`` must hold a JSON object when set.

        Raises:
            ValueError: If ``MCP_ENV_VARS`` is not a JSON object.
        """
        values = {}
        for field_name, env_key, cast in (
            ("host", HOST_ENV, str),
            ("port", PORT_ENV, int),
            ("client_port", CLIENT_PORT_ENV, int),
            ("bridge_port", BRIDGE_PORT_ENV, int),
            ("allowed_origins", ALLOWED_ORIGINS_ENV, str),
            ("auth_token", AUTH_TOKEN_ENV, str),
            ("log_level", LOG_LEVEL_ENV, str),
            ("logs_dir", LOGS_PATH_ENV, str),
        ):
            value = cls.get_env_var(env_key)
            if value:
                values[field_name] = cast(value)

        values["auth_disabled"] = (cls.get_env_var(OMIT_AUTH_ENV) or "").lower() == "true"

        env_vars = cls.get_env_var(DEFAULT_ENV_VARS_ENV)
        if env_vars:
            default_environment = json.loads(env_vars)
            if not isinstance(default_environment, dict):
                raise ValueError(f"{DEFAULT_ENV_VARS_ENV} should hold a JSON object")
            values["default_environment"] = {key: str(value) for key, value in default_environment.items()}

        ngrok_binary = cls.get_env_var(NGROK_BINARY_ENV)
        if ngrok_binary:
            values["tunnel"] = TunnelConfig(binary=ngrok_binary)

        return cls(**values)
