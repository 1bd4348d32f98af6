"""
Ghoststudio utilities for model I/O, retries and uploads.
"""

from .file_cache import FilesUploader, UploadCache, content_hash
from .genai_helpers import classify_provider_error, parse_retry_after
from .image_io import downscale_image, is_files_api_uri, load_image_bytes, save_png, to_data_url
from .json_extract import unwrap_json_response
from .retry import NO_RETRY, RetryPolicy

__all__ = [
    "FilesUploader",
    "NO_RETRY",
    "RetryPolicy",
    "UploadCache",
    "classify_provider_error",
    "content_hash",
    "downscale_image",
    "is_files_api_uri",
    "load_image_bytes",
    "parse_retry_after",
    "save_png",
    "to_data_url",
    "unwrap_json_response",
]
