"""Text extraction for uploaded registration documents.

Strategy:
  1. PDFs: read the text layer with pdfplumber.
  2. If that text fails the quality check (too short and no ID keywords),
     rasterize the first pages with pdf2image and OCR each page with
     Tesseract.
  3. Images: OCR a preprocessed copy (grayscale, autocontrast, sharpen,
     width bounded to 2000 px) with Tesseract.

The leaf helpers raise :class:`~lto_verify.errors.ExtractionError`
subclasses.  ``extract_text`` is the boundary: it never raises and turns
every failure into ``""``.  Temp images are always removed, and a failed
removal is logged rather than raised.
"""

import asyncio
import logging
import mimetypes
import os
import re
import shutil
import tempfile
from pathlib import Path

import pdfplumber
from PIL import Image, ImageFilter, ImageOps

from lto_verify.config import (
    IMAGE_MAX_WIDTH,
    MIN_TEXT_LAYER_CHARS,
    OCR_DPI,
    OCR_LANGUAGES,
    OCR_MAX_PAGES,
    OCR_RASTER_TIMEOUT,
    OCR_TEMP_DIR,
    POPPLER_PATH,
    TESSERACT_CMD,
)
from lto_verify.errors import (
    ExtractionError,
    OcrUnavailableError,
    RasterizationError,
    UnsupportedFileError,
)

logger = logging.getLogger(__name__)

# ── OCR configuration ──────────────────────────────────────────────
_TESSERACT_CANDIDATES = [
    TESSERACT_CMD,
    "/usr/bin/tesseract",
    "/usr/local/bin/tesseract",
    "/opt/homebrew/bin/tesseract",
    r"C:\Program Files\Tesseract-OCR\tesseract.exe",
    "tesseract",  # system PATH
]

_POPPLER_CANDIDATES = [
    POPPLER_PATH,
    "/opt/homebrew/bin",
    "/usr/local/bin",
    r"C:\Program Files\poppler\Library\bin",
]

# Header keywords that mark a short text layer as a real ID/registration page
_QUALITY_KEYWORDS = re.compile(r'LICENSE|ID|PASSPORT|DRIVER|NAME|ADDRESS|NUMBER', re.IGNORECASE)

_EXTENSION_MIME = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".webp": "image/webp",
}


def _find_binary(candidates: list[str]) -> str | None:
    """Return the first candidate path that exists or is in PATH."""
    for path in candidates:
        if not path:
            continue
        p = Path(path)
        if p.is_file():
            return str(p)
        if shutil.which(path):
            return path
    return None


def _init_poppler() -> bool:
    """Lazy-initialize poppler (pdf2image) for page rendering."""
    global _poppler_available, _poppler_path
    if hasattr(_init_poppler, "_done"):
        return _poppler_available

    _init_poppler._done = True
    _poppler_available = False
    _poppler_path = None

    try:
        from pdf2image import convert_from_path  # noqa: F401
    except ImportError as e:
        logger.warning(f"pdf2image not installed ({e}) — PDF rasterization disabled")
        return False

    for candidate in _POPPLER_CANDIDATES:
        if not candidate:
            continue
        p = Path(candidate)
        if p.is_dir() and ((p / "pdftoppm").exists() or (p / "pdftoppm.exe").exists()):
            _poppler_path = str(p)
            break

    logger.info(f"Poppler (pdf2image) ready (poppler_path={_poppler_path or 'PATH'})")
    _poppler_available = True
    return True


def _init_ocr() -> bool:
    """Lazy-initialize Tesseract OCR.  Returns True if OCR is available."""
    global _ocr_available
    if hasattr(_init_ocr, "_done"):
        return _ocr_available

    _init_ocr._done = True
    _ocr_available = False

    try:
        import pytesseract
    except ImportError as e:
        logger.warning(f"pytesseract not installed ({e}) — OCR disabled")
        return False

    tess_cmd = _find_binary(_TESSERACT_CANDIDATES)
    if not tess_cmd:
        logger.warning("Tesseract binary not found — OCR disabled")
        return False
    pytesseract.pytesseract.tesseract_cmd = tess_cmd

    try:
        version = pytesseract.get_tesseract_version()
    except Exception as e:
        logger.warning(f"Tesseract initialization failed: {e} — OCR disabled")
        return False

    logger.info(f"Tesseract OCR v{version} ready (cmd={tess_cmd})")
    _ocr_available = True
    return True


_poppler_available = False
_ocr_available = False
_poppler_path = None


# ── Helpers ────────────────────────────────────────────────────────
def infer_mime_type(file_path: str | Path) -> str | None:
    """Guess a MIME type from the file extension."""
    suffix = Path(file_path).suffix.lower()
    if suffix in _EXTENSION_MIME:
        return _EXTENSION_MIME[suffix]
    guessed, _ = mimetypes.guess_type(str(file_path))
    return guessed


def _validate_pdf(file_path: Path) -> str | None:
    """Return a description of what looks wrong with the PDF, else None."""
    try:
        size = file_path.stat().st_size
    except OSError as e:
        return f"cannot stat file: {e}"
    if size == 0:
        return "file is empty"
    with open(file_path, "rb") as f:
        header = f.read(5)
    if not header.startswith(b"%PDF"):
        return f"missing %PDF signature (header={header!r})"
    return None


def text_layer_is_usable(text: str) -> bool:
    """Long enough, or short but carrying an ID/registration keyword."""
    stripped = (text or "").strip()
    if not stripped:
        return False
    return len(stripped) > MIN_TEXT_LAYER_CHARS or bool(_QUALITY_KEYWORDS.search(stripped))


def _clean_ocr_text(text: str) -> str:
    text = re.sub(r'[^\S\n]+', ' ', text)  # collapse spaces (keep newlines)
    text = re.sub(r'\n{3,}', '\n\n', text)  # max 2 consecutive newlines
    return text.strip()


def _remove_path(path: Path) -> None:
    """Best-effort removal of a temp file or directory."""
    try:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
    except OSError as e:
        logger.warning(f"Temp cleanup failed for {path}: {e}")


# ── Leaf extraction steps (raise ExtractionError) ──────────────────
def _read_text_layer(file_path: Path) -> str:
    try:
        with pdfplumber.open(file_path) as pdf:
            parts = [(page.extract_text() or "") for page in pdf.pages]
    except Exception as e:
        raise ExtractionError(f"pdfplumber failed on {file_path.name}: {e}") from e
    return "\n".join(p for p in parts if p).strip()


def _rasterize_pdf(
    file_path: Path,
    output_dir: Path,
    max_pages: int = OCR_MAX_PAGES,
    timeout: int = OCR_RASTER_TIMEOUT,
) -> list[str]:
    """Render the first ``max_pages`` pages to PNG files in ``output_dir``."""
    if not _init_poppler():
        raise RasterizationError("pdf2image/poppler not available")

    from pdf2image import convert_from_path
    from pdf2image.exceptions import (
        PDFInfoNotInstalledError,
        PDFPageCountError,
        PDFPopplerTimeoutError,
        PDFSyntaxError,
    )

    try:
        paths = convert_from_path(
            str(file_path),
            dpi=OCR_DPI,
            first_page=1,
            last_page=max_pages,
            output_folder=str(output_dir),
            fmt="png",
            paths_only=True,
            timeout=timeout,
            poppler_path=_poppler_path,
        )
    except PDFPopplerTimeoutError as e:
        raise RasterizationError(f"rasterization timed out after {timeout}s") from e
    except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError, OSError) as e:
        raise RasterizationError(f"rasterization failed: {e}") from e

    return sorted(str(p) for p in paths)


def _ocr_image(image: Image.Image) -> str:
    if not _init_ocr():
        raise OcrUnavailableError("Tesseract OCR is not available")

    import pytesseract

    try:
        text = pytesseract.image_to_string(image, lang=OCR_LANGUAGES, config="--psm 6")
    except (pytesseract.TesseractError, RuntimeError, OSError) as e:
        raise ExtractionError(f"Tesseract failed: {e}") from e
    return _clean_ocr_text(text)


def _ocr_pdf_pages(file_path: Path) -> str:
    """Rasterize then OCR each page; pages joined by a blank line."""
    OCR_TEMP_DIR.mkdir(parents=True, exist_ok=True)
    work_dir = Path(tempfile.mkdtemp(prefix="pdf_", dir=str(OCR_TEMP_DIR)))
    try:
        image_paths = _rasterize_pdf(file_path, work_dir)
        logger.info(f"{file_path.name}: OCR over {len(image_paths)} rasterized page(s)")
        page_texts = []
        for i, image_path in enumerate(image_paths, start=1):
            with Image.open(image_path) as img:
                text = _ocr_image(img)
            if text:
                page_texts.append(text)
            else:
                logger.debug(f"{file_path.name}: page {i} produced no OCR text")
        return "\n\n".join(page_texts)
    finally:
        _remove_path(work_dir)


def _preprocess_image(file_path: Path) -> Path:
    """Write a grayscale, normalised, sharpened, width-bounded copy of the image."""
    with Image.open(file_path) as img:
        processed = ImageOps.grayscale(img)
        processed = ImageOps.autocontrast(processed)
        processed = processed.filter(ImageFilter.SHARPEN)
        if processed.width > IMAGE_MAX_WIDTH:
            ratio = IMAGE_MAX_WIDTH / processed.width
            processed = processed.resize(
                (IMAGE_MAX_WIDTH, max(1, int(processed.height * ratio))),
                Image.Resampling.LANCZOS,
            )

    OCR_TEMP_DIR.mkdir(parents=True, exist_ok=True)
    fd, out_path = tempfile.mkstemp(
        prefix=f"{file_path.stem}_", suffix="_processed.png", dir=str(OCR_TEMP_DIR)
    )
    os.close(fd)
    processed.save(out_path, format="PNG")
    return Path(out_path)


def extract_text_from_pdf(file_path: str | Path) -> str:
    """PDF text layer, with OCR fallback when the layer is missing or weak."""
    file_path = Path(file_path)

    problem = _validate_pdf(file_path)
    if problem:
        logger.warning(f"{file_path.name}: {problem} — attempting extraction anyway")

    try:
        text = _read_text_layer(file_path)
    except ExtractionError as e:
        logger.warning(str(e))
        text = ""

    if text_layer_is_usable(text):
        logger.info(f"{file_path.name}: text layer accepted ({len(text)} chars)")
        return text

    logger.info(f"{file_path.name}: text layer weak ({len(text)} chars), falling back to OCR")
    try:
        ocr_text = _ocr_pdf_pages(file_path)
    except ExtractionError as e:
        logger.warning(f"{file_path.name}: OCR fallback failed ({e}); keeping text layer")
        return text
    return ocr_text or text


def extract_text_from_image(file_path: str | Path) -> str:
    """OCR an image, preferring a preprocessed copy."""
    file_path = Path(file_path)
    if not _init_ocr():
        raise OcrUnavailableError("Tesseract OCR is not available")

    processed = None
    try:
        try:
            processed = _preprocess_image(file_path)
        except (OSError, ValueError) as e:
            logger.info(f"{file_path.name}: preprocessing failed ({e}); using original image")

        source = processed or file_path
        try:
            with Image.open(source) as img:
                return _ocr_image(img)
        except OSError as e:
            raise ExtractionError(f"cannot open image {file_path.name}: {e}") from e
    finally:
        if processed is not None:
            _remove_path(processed)


# ── Public entry points ────────────────────────────────────────────
def extract_text(file_path: str | Path | None, mime_type: str | None = None) -> str:
    """Extract raw text from an uploaded file.  Never raises; returns "" on failure."""
    try:
        if not file_path:
            raise UnsupportedFileError("no file path supplied")
        path = Path(file_path)
        if not path.is_file():
            raise ExtractionError(f"file not found: {path}")

        mime = (mime_type or infer_mime_type(path) or "").lower()
        if not mime:
            raise UnsupportedFileError(f"cannot infer MIME type for {path.name}")

        if mime == "application/pdf" or mime.endswith("/pdf"):
            return extract_text_from_pdf(path)
        if mime.startswith("image/"):
            return extract_text_from_image(path)
        raise UnsupportedFileError(f"unsupported MIME type {mime} for {path.name}")

    except ExtractionError as e:
        logger.warning(f"Text extraction degraded to empty: {e}")
        return ""
    except Exception as e:
        logger.error(f"Unexpected text extraction failure for {file_path}: {e}", exc_info=True)
        return ""


async def extract_text_async(file_path: str | Path | None, mime_type: str | None = None) -> str:
    """Run :func:`extract_text` off the event loop."""
    return await asyncio.to_thread(extract_text, file_path, mime_type)
