
import os
import threading
import time
import logging
from compress_pdfs.compress import compress_to_target
from compress_pdfs.errors import JobCancelled, as_pdf_error
from utils.manage_temp import remove_file

# Latest job per browser session; a newer job supersedes the older one
session_jobs = {}
_session_lock = threading.Lock()

# Finished jobs (and their output files) are kept this long for download
JOB_RETENTION_SECONDS = int(os.getenv('PDF_JOB_RETENTION_SECONDS', '3600'))
TERMINAL_STATES = ('complete', 'error', 'cancelled')


def start_compress_job(job_id, compress_progress, session_id=None):
    """Create the progress entry for a new job and cancel any older job of the same session"""
    compress_progress[job_id] = {
        'status': 'starting',
        'stage': 'queued',
        'message': 'Starting PDF compression...',
        'percentage': 0,
        'cancelled': False
    }

    if not session_id:
        return None

    with _session_lock:
        previous_job = session_jobs.get(session_id)
        session_jobs[session_id] = job_id

    if previous_job and previous_job in compress_progress:
        entry = compress_progress[previous_job]
        if entry.get('status') in ('starting', 'processing'):
            entry['cancelled'] = True
            entry['message'] = 'Superseded by a newer request'
            logging.info(f"Compress job {previous_job} superseded by {job_id} (session {session_id})")
    return previous_job


def is_job_cancelled(job_id, compress_progress, session_id=None):
    """A job is dead once it was cancelled or its session moved on to a newer job"""
    if compress_progress.get(job_id, {}).get('cancelled', False):
        return True
    if session_id:
        with _session_lock:
            current = session_jobs.get(session_id)
        if current is not None and current != job_id:
            return True
    return False


def release_session(job_id, session_id):
    """Forget the session's latest job once that job has finished"""
    if not session_id:
        return
    with _session_lock:
        if session_jobs.get(session_id) == job_id:
            del session_jobs[session_id]


def prune_finished_jobs(compress_progress, max_age=None, now=None):
    """Drop finished jobs older than max_age seconds, removing their output files"""
    max_age = JOB_RETENTION_SECONDS if max_age is None else max_age
    now = time.time() if now is None else now
    expired = [
        job_id for job_id, entry in list(compress_progress.items())
        if entry.get('status') in TERMINAL_STATES and now - entry.get('finished_at', now) > max_age
    ]
    for job_id in expired:
        entry = compress_progress.pop(job_id, None) or {}
        remove_file(entry.get('filename'))
    if expired:
        logging.debug(f"Pruned {len(expired)} finished compress jobs")
    return expired


def compress_pdf_with_progress(job_id, input_path, output_path, target_percent, settings,
                               compress_progress, session_id=None):
    """Run target-size PDF compression with progress tracking"""

    def cancellation_checker():
        return is_job_cancelled(job_id, compress_progress, session_id)

    def mark_cancelled():
        logging.info(f"Compress job {job_id} was cancelled")
        compress_progress[job_id].update({
            'status': 'cancelled',
            'message': 'PDF compression was cancelled',
            'percentage': 0,
            'finished_at': time.time()
        })

    def progress_callback(stage, message, percent=None):
        if cancellation_checker():
            return
        update = {
            'status': 'processing',
            'stage': stage,
            'message': message
        }
        if percent is not None:
            update['percentage'] = percent
        compress_progress[job_id].update(update)
        logging.debug(f"Compress progress update: {stage} - {message}")

    try:
        # Check if job was already cancelled before we even started
        if cancellation_checker():
            mark_cancelled()
            return

        compress_progress[job_id].update({
            'status': 'processing',
            'stage': 'loading',
            'message': 'Preparing PDF for compression...'
        })

        with open(input_path, 'rb') as f:
            data = f.read()

        logging.info(f"Starting compression for job {job_id}: {input_path} -> {output_path}")
        result = compress_to_target(
            data,
            target_percent=target_percent,
            settings=settings,
            progress_callback=progress_callback,
            cancellation_checker=cancellation_checker,
        )

        # No result is emitted once the job is dead
        if cancellation_checker():
            mark_cancelled()
            return

        with open(output_path, 'wb') as f:
            f.write(result.data)

        logging.info(
            f"Compression completed for job {job_id}: "
            f"{result.original_size} -> {result.achieved_size} bytes"
        )
        compress_progress[job_id] = {
            'status': 'complete',
            'stage': 'done',
            'message': 'PDF compression completed successfully!',
            'percentage': 100,
            'cancelled': False,
            'filename': output_path,
            'finished_at': time.time(),
            **result.to_dict()
        }
    except JobCancelled:
        mark_cancelled()
    except Exception as e:
        error = as_pdf_error(e)
        logging.error(f"Compress job {job_id} failed: {error}")
        compress_progress[job_id] = {
            'status': 'error',
            'stage': 'done',
            'percentage': 0,
            'cancelled': False,
            'finished_at': time.time(),
            **error.to_dict()
        }
    finally:
        remove_file(input_path)
        release_session(job_id, session_id)
