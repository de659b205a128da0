#!/usr/bin/env python3
"""
Utility functions for managing temporary job files
"""

import os
import shutil
import logging
from werkzeug.utils import secure_filename


def cleanup_temp_folder(temp_folder):
    if os.path.exists(temp_folder):
        shutil.rmtree(temp_folder, ignore_errors=True)
        logging.debug(f"Cleaned up temporary folder: {temp_folder}")


def job_paths(temp_folder, job_id, filename):
    """Return (input_path, output_path) for a job, both inside the temp folder"""
    safe_name = secure_filename(filename) or 'document.pdf'
    input_path = os.path.join(temp_folder, f"{job_id}_{safe_name}")
    output_path = os.path.join(temp_folder, f"{job_id}_compressed.pdf")
    return input_path, output_path


def remove_file(path):
    try:
        if path and os.path.exists(path):
            os.unlink(path)
            logging.debug(f"Removed temporary file: {path}")
    except OSError as e:
        logging.warning(f"Failed to cleanup temp file {path}: {e}")
