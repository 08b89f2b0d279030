import logging
import os
import shutil
import uuid
from typing import Optional

from fastapi import UploadFile

from config import UPLOAD_DIR, UPLOAD_URL_PREFIX

logger = logging.getLogger(__name__)


class FileStorage:
    """Keeps uploaded files on local disk and hands back their public path."""

    def __init__(self, directory: str = UPLOAD_DIR, url_prefix: str = UPLOAD_URL_PREFIX):
        self.directory = directory
        self.url_prefix = url_prefix.rstrip("/")
        os.makedirs(self.directory, exist_ok=True)

    def save(self, upload: UploadFile) -> str:
        _, extension = os.path.splitext(upload.filename or "")
        name = f"{uuid.uuid4().hex}{extension.lower()}"
        with open(os.path.join(self.directory, name), "wb") as target:
            shutil.copyfileobj(upload.file, target)
        logger.info(f"Stored upload {upload.filename!r} as {name}")
        return f"{self.url_prefix}/{name}"

    def delete(self, path: Optional[str]):
        if not path or not path.startswith(self.url_prefix + "/"):
            return
        name = os.path.basename(path)
        try:
            os.remove(os.path.join(self.directory, name))
        except FileNotFoundError:
            logger.warning(f"Upload {name} already removed")
