"""
PDF text extraction and structural repair.

Extraction uses PyMuPDF; repair rewrites the document through pikepdf, which
rebuilds the cross-reference table of a malformed file.
"""

from __future__ import annotations

import io

from velocity.errors import ApiError

EXTRACTOR_PRIMARY = "pymupdf"
EXTRACTOR_REPAIRED = "pymupdf+pikepdf-repair"

_XREF_SIGNATURES = (
    "xref",
    "cross-reference",
    "cross reference",
    "trailer",
    "startxref",
    "broken document",
    "failed to parse",
)


def normalize_text(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def looks_like_html(data: bytes) -> bool:
    head = data[:200].decode("utf-8", errors="ignore").lstrip().lower()
    return head.startswith("<!doctype") or head.startswith("<html") or head.startswith("<")


def validate_download(data: bytes, *, min_bytes: int) -> bytes:
    """Reject payloads that cannot be the uploaded document."""
    size = len(data)
    if size < min_bytes:
        raise ApiError(
            code="DOC_DOWNLOAD_TOO_SMALL",
            message=f"downloaded file is unexpectedly small ({size} bytes)",
            error_class="transient",
            retryable=True,
            http_status=502,
        )
    if looks_like_html(data):
        preview = data[:60].decode("utf-8", errors="replace")
        raise ApiError(
            code="DOC_DOWNLOAD_HTML",
            message=f"downloaded content looks like HTML, not a PDF (possible auth/404 page); first bytes: {preview}",
            error_class="transient",
            retryable=True,
            http_status=502,
        )
    return data


def is_xref_error(exc: BaseException) -> bool:
    lowered = str(getattr(exc, "message", "") or exc).lower()
    return any(token in lowered for token in _XREF_SIGNATURES)


def extract_pdf_text(data: bytes) -> str:
    """Return the plain text of every page, pages separated by newlines."""
    try:
        import pymupdf
    except ImportError:
        raise ApiError(
            code="PARSER_DEPENDENCY_MISSING",
            message="pymupdf is required for PDF parsing",
            error_class="permanent",
            retryable=False,
            http_status=500,
        )

    try:
        doc = pymupdf.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise ApiError(
            code="DOC_PARSE_PDF_CORRUPT",
            message=f"could not read PDF: {exc}",
            error_class="permanent",
            retryable=False,
            http_status=422,
        ) from exc

    try:
        if doc.needs_pass:
            raise ApiError(
                code="DOC_PARSE_PDF_ENCRYPTED",
                message="PDF is password protected",
                error_class="permanent",
                retryable=False,
                http_status=422,
            )
        pages: list[str] = []
        for page in doc:
            pages.append(page.get_text("text"))
    except ApiError:
        raise
    except Exception as exc:
        raise ApiError(
            code="DOC_PARSE_PDF_CORRUPT",
            message=f"could not read PDF: {exc}",
            error_class="permanent",
            retryable=False,
            http_status=422,
        ) from exc
    finally:
        doc.close()
    return "\n".join(pages)


def repair_pdf_bytes(data: bytes) -> bytes:
    """Rewrite the PDF structure; object streams are disabled for downstream compatibility."""
    try:
        import pikepdf
    except ImportError:
        raise ApiError(
            code="PARSER_DEPENDENCY_MISSING",
            message="pikepdf is required for PDF repair",
            error_class="permanent",
            retryable=False,
            http_status=500,
        )

    out = io.BytesIO()
    try:
        with pikepdf.open(io.BytesIO(data)) as pdf:
            pdf.save(out, object_stream_mode=pikepdf.ObjectStreamMode.disable)
    except Exception as exc:
        raise ApiError(
            code="DOC_PDF_REPAIR_FAILED",
            message=f"PDF repair failed: {exc}",
            error_class="permanent",
            retryable=False,
            http_status=422,
        ) from exc
    return out.getvalue()
