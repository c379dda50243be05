from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Generic,
    TypeVar,
)

from pydantic import BaseModel


class PydanticRunParams(BaseModel):
    """
    Container for the parameters an integration needs to run. The CLI
    builds it from the command options.
    """


RunParamsTypeVar = TypeVar("RunParamsTypeVar", bound=PydanticRunParams)


class ReconcileIntegration(ABC, Generic[RunParamsTypeVar]):
    """
    The base class for all integrations. It defines the basic interface the
    CLI uses to interact with an integration.
    """

    def __init__(self, params: RunParamsTypeVar) -> None:
        self.params: RunParamsTypeVar = params

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def run(self, dry_run: bool) -> None:
        """
        The `run` function of an integration is the entry point to its actual
        functionality. It is obliged to honor the `dry_run` argument and not
        perform any changes to the remote clusters if it is set to `True`. At
        the same time the integration should progress as far as possible in
        dry-run mode to surface problems early, e.g. missing references or
        unreachable clusters.
        """


class RunnerException(Exception):
    """
    Raised by an integration run to signal that it finished with errors.
    The CLI translates it into a non zero exit code.
    """
