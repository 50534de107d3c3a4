"""
Rule attachment storage.

Rules that create reply drafts may reference files uploaded by the user,
stored under a single root directory:
    {"name": "pricing.pdf", "path": "<user_id>/pricing.pdf", "type": "application/pdf"}
"""
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, List

from backend.core.email.providers.base import DraftAttachment

logger = logging.getLogger(__name__)


class AttachmentStore:
    """Reads rule attachments from `base_dir`; paths may not escape it."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir).resolve()

    def resolve(self, relative_path: str) -> Path:
        """
        Absolute path for a stored reference.

        Raises:
            ValueError: If the path is absolute or escapes base_dir
        """
        if not relative_path or Path(relative_path).is_absolute():
            raise ValueError(f"Invalid attachment path: {relative_path!r}")
        path = (self.base_dir / relative_path).resolve()
        if path != self.base_dir and self.base_dir not in path.parents:
            raise ValueError(f"Attachment path escapes storage root: {relative_path!r}")
        return path

    def load(self, reference: Dict[str, Any]) -> DraftAttachment:
        """
        Load one attachment reference.

        Raises:
            ValueError: Bad path
            OSError: File missing or unreadable
        """
        path = self.resolve(reference.get('path', ''))
        data = path.read_bytes()
        filename = reference.get('name') or path.name
        content_type = reference.get('type') or mimetypes.guess_type(filename)[0] or 'application/octet-stream'
        return DraftAttachment(filename=filename, content_type=content_type, data=data)

    def load_all(self, references: List[Dict[str, Any]]) -> List[DraftAttachment]:
        """Load every reference that can be loaded; failures are logged and left out."""
        attachments = []
        for reference in references or []:
            try:
                attachments.append(self.load(reference))
            except (ValueError, OSError) as e:
                logger.warning(f"Skipping rule attachment {reference.get('name') or reference.get('path')}: {e}")
        return attachments
