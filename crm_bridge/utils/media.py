from __future__ import annotations

import base64
import mimetypes
import re
from pathlib import PurePosixPath
from urllib.parse import urlparse

DEFAULT_MIME = "application/octet-stream"

DATA_URI_RE = re.compile(r"^data:(?P<mime>[^;,]+);base64,(?P<payload>.*)$", re.DOTALL)

FILE_CATEGORY_MIMES: dict[str, tuple[str, ...]] = {
    "pdf": ("application/pdf",),
    "image": (
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
    ),
    "document": (
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.oasis.opendocument.text",
        "application/rtf",
        "text/plain",
    ),
    "spreadsheet": (
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.oasis.opendocument.spreadsheet",
        "text/csv",
    ),
    "presentation": (
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "application/vnd.oasis.opendocument.presentation",
    ),
    "archive": (
        "application/zip",
        "application/x-rar-compressed",
        "application/x-7z-compressed",
        "application/x-tar",
        "application/gzip",
        "application/x-gzip",
    ),
}

FILE_CATEGORY_EXTENSIONS: dict[str, str] = {
    "pdf": "pdf",
    "jpg": "image",
    "jpeg": "image",
    "png": "image",
    "gif": "image",
    "webp": "image",
    "svg": "image",
    "doc": "document",
    "docx": "document",
    "odt": "document",
    "rtf": "document",
    "txt": "document",
    "xls": "spreadsheet",
    "xlsx": "spreadsheet",
    "ods": "spreadsheet",
    "csv": "spreadsheet",
    "ppt": "presentation",
    "pptx": "presentation",
    "odp": "presentation",
    "zip": "archive",
    "rar": "archive",
    "7z": "archive",
    "tar": "archive",
    "gz": "archive",
}

MIME_EXTENSIONS: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "application/pdf": "pdf",
    "text/plain": "txt",
    "text/csv": "csv",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.ms-powerpoint": "ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "application/zip": "zip",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
}

AUDIO_EXTENSIONS = {"mp3", "oga", "ogg", "wav", "mp4", "m4a", "webm", "opus"}


def clean_mime(value: str | None) -> str:
    if not value:
        return ""
    return value.split(";", 1)[0].strip().lower()


def extension_from_name(name: str | None) -> str:
    if not name:
        return ""
    path = urlparse(name).path if "://" in name else name
    suffix = PurePosixPath(path).suffix
    return suffix[1:].lower() if suffix else ""


def extension_for_mime(mime: str | None) -> str:
    cleaned = clean_mime(mime)
    if not cleaned:
        return ""
    if cleaned in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[cleaned]
    guessed = mimetypes.guess_extension(cleaned)
    if guessed:
        return guessed.lstrip(".")
    return re.sub(r"[^a-z0-9]", "", cleaned.rsplit("/", 1)[-1])


def resolve_content_type(
    header_value: str | None,
    declared_mime: str | None = None,
    file_name: str | None = None,
) -> str:
    header = clean_mime(header_value)
    if header and header != DEFAULT_MIME:
        return header
    declared = clean_mime(declared_mime)
    if "/" in declared:
        return declared
    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        if guessed:
            return guessed
    return header or DEFAULT_MIME


def file_category(content_type: str | None, extension: str | None) -> str:
    cleaned = clean_mime(content_type)
    if cleaned:
        for category, mimes in FILE_CATEGORY_MIMES.items():
            if cleaned in mimes:
                return category
    if extension:
        return FILE_CATEGORY_EXTENSIONS.get(extension.lower().lstrip("."), "other")
    return "other"


def encode_data_uri(data: bytes, content_type: str) -> str:
    payload = base64.b64encode(data).decode("ascii")
    return f"data:{content_type or DEFAULT_MIME};base64,{payload}"


def decode_data_uri(value: str) -> tuple[str, bytes]:
    match = DATA_URI_RE.match(value or "")
    if not match:
        raise ValueError("Invalid data URI")
    return match.group("mime"), base64.b64decode(match.group("payload"))
