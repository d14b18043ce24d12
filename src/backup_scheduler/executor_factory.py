from typing import Any, Dict, Optional, Type

from pydantic import BaseModel

from backup_scheduler.domain.job import JobKind
from backup_scheduler.errors import JobValidationError
from backup_scheduler.executors.options import DEFAULT_OPTION_SCHEMAS
from backup_scheduler.executors.protocol import JobExecutor


class JobExecutorFactory:
    """
    Factory class for looking up job executors by job kind.
    """
    def __init__(self, schemas: Optional[Dict[JobKind, Type[BaseModel]]] = None):
        self._schemas: Dict[JobKind, Type[BaseModel]] = dict(DEFAULT_OPTION_SCHEMAS if schemas is None else schemas)
        self._executors: Dict[JobKind, JobExecutor] = {}

    @property
    def supported_schemas(self) -> Dict[JobKind, Type[BaseModel]]:
        return self._schemas

    @property
    def registered_kinds(self):
        return frozenset(self._executors)

    def register(self, executor: JobExecutor) -> None:
        """
        Register an executor for the kind it supports.

        Args:
            executor (JobExecutor): The executor instance to register.
        """
        kind: JobKind = executor.supported_kind()
        if kind not in self._schemas:
            raise ValueError(f"Kind '{kind.value}' is not supported")
        if kind in self._executors:
            raise ValueError(f"An executor for kind '{kind.value}' is already registered")
        self._executors[kind] = executor

    def validate_options(self, kind: JobKind, options: Dict[str, Any]) -> BaseModel:
        """
        Validate kind-specific job options.

        Raises:
            KeyError: If the kind has no options schema.
            JobValidationError: If the options do not match the schema.
        """
        if kind not in self._schemas:
            raise KeyError(f"No schema registered for kind '{kind.value}'")
        try:
            return self._schemas[kind](**(options or {}))
        except ValueError as e:
            raise JobValidationError(f"Invalid options for kind '{kind.value}': {str(e)}")

    def get_executor(self, kind: JobKind, options: Optional[Dict[str, Any]] = None) -> JobExecutor:
        """
        Get the executor for a kind and validate the job options.

        Args:
            kind (JobKind): The kind of job to run.
            options (Dict[str, Any]): The job options to validate.

        Returns:
            JobExecutor: The registered executor.

        Raises:
            KeyError: If no executor is registered for the kind.
            JobValidationError: If the options are invalid for the kind.
        """
        if kind not in self._executors:
            raise KeyError(f"No executor registered for kind '{kind.value}'")
        self.validate_options(kind, options or {})
        return self._executors[kind]
