"""
Error types for PDF compression jobs.

Input-level and collaborator failures abort a job and carry a stable code so
the caller can show a targeted message. Item-level failures (one image, one
structural method) never reach this module; they are logged and skipped.
"""

FILE_TOO_LARGE = 'FILE_TOO_LARGE'
INVALID_FILE_TYPE = 'INVALID_FILE_TYPE'
ENCRYPTED_PDF = 'ENCRYPTED_PDF'
CORRUPTED_PDF = 'CORRUPTED_PDF'
COLLABORATOR_UNAVAILABLE = 'COLLABORATOR_UNAVAILABLE'
PROCESSING_FAILED = 'PROCESSING_FAILED'

_MESSAGES = {
    FILE_TOO_LARGE: ('File exceeds size limit', 'File is too large to process.'),
    INVALID_FILE_TYPE: ('Invalid file type', 'Please select a valid PDF file.'),
    ENCRYPTED_PDF: ('PDF is encrypted', 'This PDF is password-protected and cannot be processed.'),
    CORRUPTED_PDF: ('PDF structure invalid', 'This PDF appears to be corrupted.'),
    COLLABORATOR_UNAVAILABLE: (
        'Compression service unavailable',
        'The PDF engine could not be started. Please try again.',
    ),
    PROCESSING_FAILED: ('Processing failed', 'Failed to process the PDF. Please try a different file.'),
}


class PdfError(Exception):
    """Fatal job error with a stable error kind"""

    def __init__(self, message, code, user_message):
        super().__init__(message)
        self.code = code
        self.user_message = user_message

    def to_dict(self):
        return {
            'error_kind': self.code,
            'message': str(self),
            'user_message': self.user_message,
        }


class JobCancelled(Exception):
    """Raised when a job was cancelled or superseded by a newer request"""


def create_pdf_error(code, details=None):
    message, user_message = _MESSAGES.get(code, _MESSAGES[PROCESSING_FAILED])
    if details:
        message = f"{message}: {details}"
    return PdfError(message, code, user_message)


def as_pdf_error(error):
    """Map any exception to a PdfError, classifying common engine messages"""
    if isinstance(error, PdfError):
        return error
    text = str(error)
    lowered = text.lower()
    if 'encrypt' in lowered or 'password' in lowered:
        return create_pdf_error(ENCRYPTED_PDF, text)
    if 'invalid' in lowered or 'corrupt' in lowered or 'broken' in lowered:
        return create_pdf_error(CORRUPTED_PDF, text)
    return create_pdf_error(PROCESSING_FAILED, text)
