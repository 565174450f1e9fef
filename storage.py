"""
Upload store for product and order photos.

Files land under UPLOAD_DIR/<folder>/ and are served from /assets.
"""
import logging
import os
import shutil
from typing import List
from uuid import uuid4

from fastapi import UploadFile

import config
from errors import InvalidInput

log = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif"}
MAX_FILES = 5


def upload(file: UploadFile, folder: str) -> dict:
    ext = os.path.splitext(file.filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise InvalidInput(f"Unsupported file type: {file.filename}")
    public_id = uuid4().hex
    target_dir = os.path.join(config.UPLOAD_DIR, folder)
    os.makedirs(target_dir, exist_ok=True)
    with open(os.path.join(target_dir, public_id + ext), "wb") as out:
        shutil.copyfileobj(file.file, out)
    return {
        "url": f"{config.ASSETS_URL_PREFIX}/{folder}/{public_id}{ext}",
        "publicId": f"{folder}/{public_id}",
    }


def upload_many(files: List[UploadFile], folder: str, best_effort: bool = False) -> List[dict]:
    if len(files) > MAX_FILES:
        raise InvalidInput(f"At most {MAX_FILES} photos per upload")
    uploaded = []
    for f in files:
        try:
            uploaded.append(upload(f, folder))
        except (InvalidInput, OSError) as e:
            if not best_effort:
                raise
            log.warning("Skipping photo %s: %s", f.filename, e)
    return uploaded
