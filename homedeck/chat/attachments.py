"""Image attachments sent to the agent as data URLs."""
import base64
import mimetypes
from pathlib import Path
from typing import Optional, Union


def to_data_url(source: Union[str, Path, bytes], mime_type: Optional[str] = None) -> str:
    """Encode an image file (or raw bytes) as a `data:` URL."""
    if isinstance(source, bytes):
        data = source
        mime_type = mime_type or "application/octet-stream"
    else:
        path = Path(source)
        data = path.read_bytes()
        mime_type = mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"

    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def is_image(mime_type: str) -> bool:
    return mime_type.startswith("image/")
