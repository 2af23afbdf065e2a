import asyncio
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from pymongo.errors import PyMongoError
from sqlalchemy.exc import SQLAlchemyError

from proposal_sync.core.exceptions import AppError, ConnectionExhaustedError, SyncError
from proposal_sync.core.retry import RetryExhaustedError
from proposal_sync.schemas.proposal import DataStore
from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)

DOCUMENT_STORE_ERRORS = (
    PyMongoError,
    RetryExhaustedError,
    ConnectionExhaustedError,
    asyncio.TimeoutError,
)


@contextmanager
def store_operation(proposal_id: str, store: DataStore, action: str) -> Iterator[None]:
    """Translate adapter failures inside the block into ``SyncError``.

    Business errors (``AppError`` other than an exhausted connection) pass
    through unchanged.

    Args:
        proposal_id: Proposal being read or written
        store: Store touched by the block
        action: Short description used in the error message
    """
    try:
        yield
    except SQLAlchemyError as e:
        LOGGER.error(
            f"Relational store failure during {action}",
            exc_info=True,
            extra={"proposal_id": proposal_id},
        )
        raise SyncError(
            f"Relational store failure during {action}: {e}",
            proposal_id=proposal_id,
            store=DataStore.RELATIONAL.value,
            original_error=e,
        ) from e
    except DOCUMENT_STORE_ERRORS as e:
        LOGGER.error(
            f"Document store failure during {action}",
            extra={"proposal_id": proposal_id, "error": str(e)},
        )
        raise SyncError(
            f"Document store failure during {action}: {e}",
            proposal_id=proposal_id,
            store=DataStore.DOCUMENT.value,
            original_error=e,
        ) from e


class BaseService(ABC):
    """Base class for application services.

    Provides a standardized execution flow with validation and error handling.
    """

    def __init__(self, repository: Optional[Any] = None):
        """Initialize the service.

        Args:
            repository: Optional primary repository for the service
        """
        self.repository = repository
        self.logger = LOGGER

    async def execute(self, *args, **kwargs) -> Any:
        """Execute the service logic.

        Validates the input, runs the core logic and wraps unexpected
        failures in ``AppError``.

        Raises:
            AppError: If execution fails
        """
        try:
            self.validate(*args, **kwargs)

            result = await self.run(*args, **kwargs)

            return result

        except AppError:
            raise

        except Exception as e:
            self.logger.error(
                f"Service execution failed: {str(e)}",
                exc_info=True,
                extra={"service": self.__class__.__name__}
            )
            raise AppError(f"Service execution failed: {str(e)}", original_error=e)

    def validate(self, *args, **kwargs):
        """Validate service input.

        Override this method to implement custom validation logic.

        Raises:
            ValidationError: If input is invalid
        """
        pass

    @abstractmethod
    async def run(self, *args, **kwargs) -> Any:
        """Run the core service logic.

        Must be implemented by subclasses.
        """
        pass
