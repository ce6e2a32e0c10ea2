from typing import AsyncIterator, List, Optional, Sequence
from pathlib import Path
import subprocess

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import anyio
import yaml

from agentrelay.const import BRIDGE_PACKAGE, DEFAULT_ENCODING, NGROK_BINARY
from agentrelay.models import DependencyError

BREW_INSTALL_URL = "https://brew.sh"

class DependencyModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class DependencyStatus(DependencyModel):
    ngrok :bool=False
    supergateway :bool=False
    brew :bool=False

    @property
    def complete(self)->bool:
        return self.ngrok and self.supergateway

class InstallProgress(DependencyModel):
    total :int
    current :int
    current_package :str=""
    message :str

class NgrokConfig(DependencyModel):
    authtoken :Optional[str]=None
    config_path :Optional[str]=None

class PackageSpec(BaseModel):
    name :str
    installer :str=Field(pattern="^(brew|npm)$")

    @property
    def command(self)->List[str]:
        if self.installer == "brew":
            return ["brew", "install", self.name]
        return ["npm", "install", "-g", self.name]

class DependencyManager:
    """
    Status checks and installation of the command-line helpers the relay spawns.

    ``install`` reports progress as an async iterator of :class:`InstallProgress`
    so any front end can consume it.
    """
    def __init__(self, ngrok_binary :str=NGROK_BINARY, bridge_package :str=BRIDGE_PACKAGE):
        self.ngrok_binary = ngrok_binary
        self.bridge_package = bridge_package

    @staticmethod
    async def _succeeds(command :Sequence[str])->bool:
        try:
            result = await anyio.run_process(list(command), check=False)
        except OSError:
            return False
        return result.returncode == 0

    async def check(self)->DependencyStatus:
        return DependencyStatus(
            ngrok=await self._succeeds([self.ngrok_binary, "--version"]),
            supergateway=await self._succeeds(["npm", "list", "-g", self.bridge_package]),
            brew=await self._succeeds(["brew", "--version"]),
        )

    async def install(self)->AsyncIterator[InstallProgress]:
        status = await self.check()
        if not status.brew:
            raise DependencyError(f"Homebrew is not installed. Please install Homebrew first: {BREW_INSTALL_URL}")

        to_install = []
        if not status.ngrok:
            to_install.append(PackageSpec(name="ngrok", installer="brew"))
        if not status.supergateway:
            to_install.append(PackageSpec(name=self.bridge_package, installer="npm"))

        total = len(to_install)
        for current, package in enumerate(to_install, start=1):
            yield InstallProgress(
                total=total,
                current=current,
                current_package=package.name,
                message=f"Installing {package.name}...",
            )
            await self._install_package(package)

        if total:
            yield InstallProgress(
                total=total,
                current=total,
                message="All dependencies installed successfully!",
            )

    async def _install_package(self, package :PackageSpec):
        logger.info(f"Running {' '.join(package.command)}")
        try:
            result = await anyio.run_process(package.command, check=False, stderr=subprocess.STDOUT)
        except OSError as exc:
            raise DependencyError(f"Failed to install {package.name} with {package.installer}: {exc}") from exc

        output = result.stdout.decode(DEFAULT_ENCODING, errors="replace").strip()
        if output:
            logger.debug(f"{package.installer} install {package.name}: {output}")
        if result.returncode != 0:
            raise DependencyError(f"Failed to install {package.name} with {package.installer}")

    async def configure_ngrok(self, authtoken :Optional[str]):
        if not authtoken or not authtoken.strip():
            raise DependencyError("Auth token is required", status_code=400)

        if not await self._succeeds([self.ngrok_binary, "--version"]):
            raise DependencyError("ngrok is not installed. Please install dependencies first.")

        result = await anyio.run_process(
            [self.ngrok_binary, "config", "add-authtoken", authtoken.strip()],
            check=False,
        )
        if result.returncode != 0:
            output = (result.stderr or result.stdout).decode(DEFAULT_ENCODING, errors="replace").strip()
            raise DependencyError(f"Failed to configure ngrok: {output}")
        logger.info("ngrok configured successfully")

    @staticmethod
    def ngrok_config(config_path :Optional[Path]=None)->NgrokConfig:
        """Read the auth token from the ngrok config file, if there is one."""
        config_path = Path(config_path or Path.home() / ".ngrok2" / "ngrok.yml")
        if not config_path.exists():
            return NgrokConfig()

        with open(config_path, "r") as _file:
            content = yaml.safe_load(_file) or {}
        authtoken = content.get("authtoken") or (content.get("agent") or {}).get("authtoken")
        return NgrokConfig(authtoken=authtoken, config_path=str(config_path))
