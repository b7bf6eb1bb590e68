"""Uploaded document validation and text extraction."""

import os
import re
import zipfile

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

ALLOWED_DOCUMENT_EXTENSIONS = {'pdf', 'docx', 'txt'}
MIN_DOCUMENT_TEXT_CHARS = 50
MAX_DOCUMENT_TEXT_CHARS = 40000
NON_PRINTABLE_RE = re.compile(r'[\x00-\x09\x0B-\x0C\x0E-\x1F\x7F]')


class DocumentError(ValueError):
    pass


def allowed_file(filename, allowed_extensions=ALLOWED_DOCUMENT_EXTENSIONS):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in allowed_extensions


def file_extension(filename):
    return filename.rsplit('.', 1)[1].lower() if '.' in filename else ''


def get_saved_file_size(path):
    try:
        return os.path.getsize(path)
    except Exception:
        return -1


def file_has_pdf_signature(path):
    try:
        with open(path, 'rb') as handle:
            return handle.read(5) == b'%PDF-'
    except Exception:
        return False


def file_has_docx_signature(path):
    try:
        with open(path, 'rb') as handle:
            if handle.read(4) != b'PK\x03\x04':
                return False
        with zipfile.ZipFile(path, 'r') as archive:
            members = set(archive.namelist())
        return '[Content_Types].xml' in members and 'word/document.xml' in members
    except Exception:
        return False


def _extract_pdf(path):
    if not file_has_pdf_signature(path):
        raise DocumentError('File is not a valid PDF.')
    try:
        reader = PdfReader(path)
        return '\n'.join((page.extract_text() or '') for page in reader.pages)
    except PdfReadError as exc:
        raise DocumentError('Could not read the PDF file.') from exc


def _extract_docx(path):
    if not file_has_docx_signature(path):
        raise DocumentError('File is not a valid Word document.')
    try:
        document = Document(path)
    except (PackageNotFoundError, KeyError, zipfile.BadZipFile) as exc:
        raise DocumentError('Could not read the Word document.') from exc
    return '\n'.join(paragraph.text for paragraph in document.paragraphs)


def _extract_txt(path):
    with open(path, 'rb') as handle:
        return handle.read().decode('utf-8', errors='replace')


EXTRACTORS = {
    'pdf': _extract_pdf,
    'docx': _extract_docx,
    'txt': _extract_txt,
}


def clean_document_text(text):
    return NON_PRINTABLE_RE.sub('', text or '')


def extract_document_text(path, filename):
    """Return cleaned, truncated text for an uploaded document.

    Raises DocumentError for unsupported types or documents with too little text.
    """
    extractor = EXTRACTORS.get(file_extension(filename))
    if extractor is None:
        raise DocumentError('Unsupported file type. Must be PDF, DOCX or TXT.')
    text = clean_document_text(extractor(path))
    if len(text.strip()) < MIN_DOCUMENT_TEXT_CHARS:
        raise DocumentError('Document text is empty or too short. Scanned PDFs are not supported.')
    return text[:MAX_DOCUMENT_TEXT_CHARS]
