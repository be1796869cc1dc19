"""
Image uploads: temp-file staging, the Cloudinary media relay and the ML inference relay.

Both relays own the temp file they are given and remove it whether or not the
outbound call succeeds.
"""
import logging
import os
import time
import uuid
from typing import Any, Dict, Literal, Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
import requests
from fastapi import HTTPException, UploadFile
from pydantic import BaseModel

logger = logging.getLogger("plantify.uploads")

UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "temp"))
MAX_UPLOAD_MB = float(os.getenv("MAX_UPLOAD_MB", "2"))

CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY")
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET")
UPLOAD_TIMEOUT = float(os.getenv("UPLOAD_TIMEOUT", "30"))

ML_SERVICE_URL = os.getenv("ML_SERVICE_URL", "http://localhost:8000/predict")
ML_TIMEOUT = float(os.getenv("ML_TIMEOUT", "60"))

FailureKind = Literal["unreachable", "upstream_error", "local_io"]


class RelayFailure(BaseModel):
    kind: FailureKind
    status_code: int
    message: str


class UploadedImage(BaseModel):
    url: str
    public_id: str


class PredictionResult(BaseModel):
    payload: Dict[str, Any] = {}
    failure: Optional[RelayFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class UploadFailed(Exception):
    def __init__(self, failure: RelayFailure):
        super().__init__(failure.message)
        self.failure = failure


def remove_temp_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.error("Could not delete temp file %s: %s", path, exc)


def save_upload(upload: UploadFile, upload_dir: Optional[str] = None) -> str:
    """Stage an uploaded image on local disk and return its path."""
    if not (upload.content_type or "").startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image files allowed")
    upload_dir = upload_dir or UPLOAD_DIR
    os.makedirs(upload_dir, exist_ok=True)
    ext = os.path.splitext(upload.filename or "")[1]
    path = os.path.join(upload_dir, f"{int(time.time() * 1000)}-{uuid.uuid4().hex}{ext}")
    limit = int(MAX_UPLOAD_MB * 1024 * 1024)
    data = upload.file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=400, detail=f"File too large, limit is {MAX_UPLOAD_MB:g}MB")
    with open(path, "wb") as fh:
        fh.write(data)
    return path


UPSTREAM_STATUS = {
    cloudinary.exceptions.BadRequest: 400,
    cloudinary.exceptions.AuthorizationRequired: 401,
    cloudinary.exceptions.NotAllowed: 403,
    cloudinary.exceptions.NotFound: 404,
    cloudinary.exceptions.AlreadyExists: 409,
    cloudinary.exceptions.RateLimited: 429,
}


def _configure_cloudinary() -> bool:
    if not (CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET):
        return False
    cloudinary.config(
        cloud_name=CLOUDINARY_CLOUD_NAME,
        api_key=CLOUDINARY_API_KEY,
        api_secret=CLOUDINARY_API_SECRET,
        secure=True,
    )
    return True


def upload_image(path: str, folder: str = "uploads") -> UploadedImage:
    """Upload a local image to Cloudinary under `folder`; the local file is always removed."""
    try:
        if not _configure_cloudinary():
            raise UploadFailed(RelayFailure(kind="local_io", status_code=500, message="Image storage is not configured"))
        try:
            result = cloudinary.uploader.upload(path, folder=folder, resource_type="image", timeout=UPLOAD_TIMEOUT)
        # the SDK wraps socket and urllib3 failures in GeneralError
        except cloudinary.exceptions.GeneralError as exc:
            logger.error("Cloudinary unreachable: %s", exc)
            raise UploadFailed(RelayFailure(kind="unreachable", status_code=503, message="Image upload failed"))
        except cloudinary.exceptions.Error as exc:
            logger.error("Cloudinary upload error: %s", exc)
            raise UploadFailed(RelayFailure(
                kind="upstream_error", status_code=UPSTREAM_STATUS.get(type(exc), 502), message="Image upload failed"))
        except OSError as exc:
            logger.error("Image upload local error: %s", exc)
            raise UploadFailed(RelayFailure(kind="local_io", status_code=500, message="Image upload failed"))
        return UploadedImage(url=result["secure_url"], public_id=result["public_id"])
    finally:
        remove_temp_file(path)


def delete_image(public_id: str) -> bool:
    """Remove a stored image; failures are logged, never raised."""
    if not _configure_cloudinary():
        return False
    try:
        result = cloudinary.uploader.destroy(public_id, resource_type="image", timeout=UPLOAD_TIMEOUT)
    except cloudinary.exceptions.Error as exc:
        logger.warning("Could not delete image %s: %s", public_id, exc)
        return False
    return result.get("result") == "ok"


def _upstream_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return "ML service returned an error."
    if isinstance(body, dict):
        return body.get("error") or body.get("detail") or "ML service returned an error."
    return "ML service returned an error."


def run_prediction(path: str, filename: Optional[str] = None,
                   session: Optional[requests.Session] = None) -> PredictionResult:
    """Forward an image to the inference service and relay its JSON; the local file is always removed."""
    http = session or requests
    try:
        with open(path, "rb") as fh:
            response = http.post(
                ML_SERVICE_URL,
                files={"file": (filename or os.path.basename(path), fh)},
                timeout=ML_TIMEOUT,
            )
        if not response.ok:
            message = _upstream_message(response)
            logger.error("ML service error response %s: %s", response.status_code, message)
            return PredictionResult(failure=RelayFailure(
                kind="upstream_error", status_code=response.status_code, message=message))
        payload = response.json()
    except requests.JSONDecodeError:
        return PredictionResult(failure=RelayFailure(
            kind="upstream_error", status_code=502, message="ML service returned invalid JSON."))
    except requests.RequestException as exc:
        logger.error("ML service unreachable: %s", exc)
        return PredictionResult(failure=RelayFailure(
            kind="unreachable", status_code=503,
            message=f"Could not connect to the ML service at {ML_SERVICE_URL}."))
    except OSError as exc:
        logger.error("ML relay local error: %s", exc)
        return PredictionResult(failure=RelayFailure(kind="local_io", status_code=500, message=str(exc)))
    finally:
        remove_temp_file(path)
    if not isinstance(payload, dict):
        payload = {"prediction": payload}
    return PredictionResult(payload=payload)
