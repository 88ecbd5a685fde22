"""Best-effort cleanup of side-car files (archives, vars copies, orphaned volumes).

These helpers log failures and return False instead of raising; a failed
cleanup never changes the outcome of the operation that triggered it.
"""

from pathlib import Path

import aiofiles.os

from vmx._logging import get_logger

logger = get_logger(__name__)


async def cleanup_file(
    file_path: Path | str | None,
    context_id: str,
    description: str = "file",
) -> bool:
    """Delete a file; a missing file counts as success.

    Args:
        file_path: Path to delete (None safe - returns immediately)
        context_id: Context for logging (e.g., image ref, volume name)
        description: Description for logging (e.g., "push archive")

    Returns:
        True if the file is gone, False if deletion failed
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(
            f"{description} deleted",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return True

    except FileNotFoundError:
        logger.debug(
            f"{description} already deleted",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return True

    except OSError as e:
        logger.warning(
            f"{description} could not be deleted",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
