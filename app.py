# Load necessary libraries
from flask import Flask, request, send_from_directory, jsonify
import os
import threading
import uuid
import tempfile
import atexit
import json
import logging
from compress_pdfs.compression_potential import MethodMeasurement, calculate_compression_potential, select_methods_for_target
from compress_pdfs.document import MAX_FILE_SIZE_BYTES
from compress_pdfs.errors import FILE_TOO_LARGE, INVALID_FILE_TYPE, create_pdf_error
from compress_pdfs.settings import SettingsVector, preset_settings
from compress_pdfs.target_size import clamp_target_percent, settings_for_target_percent, target_bytes_for_percent
from utils.manage_temp import cleanup_temp_folder, job_paths
from utils.process_with_progress import compress_pdf_with_progress, prune_finished_jobs, start_compress_job

DEBUG = os.getenv('DEBUG', 'false').lower() == 'true'

# Configure logging
if DEBUG:
    logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(levelname)s - %(message)s')
else:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

# Create a temporary directory for uploads and compressed outputs
TEMP_FOLDER = tempfile.mkdtemp(prefix='pdf_compress_temp_')
logging.debug(f"Created temporary folder: {TEMP_FOLDER}")

# Ensure cleanup on exit
atexit.register(lambda: cleanup_temp_folder(TEMP_FOLDER))

app = Flask(__name__)
app.config['UPLOAD_FOLDER'] = TEMP_FOLDER
# Leave room for multipart overhead on top of the PDF size limit
app.config['MAX_CONTENT_LENGTH'] = MAX_FILE_SIZE_BYTES + 1024 * 1024
ALLOWED_EXTENSIONS = {'pdf'}

# Compress progress tracking
compress_progress = {}


def allowed_file(filename, allowed=ALLOWED_EXTENSIONS):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in allowed


def error_response(error, status):
    return jsonify({'success': False, 'error': str(error), **error.to_dict()}), status


def parse_job_settings(form):
    """Read target_percent / preset / settings from the submitted form"""
    target_percent = form.get('target_percent')
    if target_percent not in (None, ''):
        return clamp_target_percent(int(target_percent)), None

    preset = form.get('preset')
    if preset:
        return None, preset_settings(preset)

    settings_json = form.get('settings')
    if settings_json:
        return None, SettingsVector.from_dict(json.loads(settings_json))
    return None, None


### API Routes ####

@app.errorhandler(413)
def handle_413(e):
    return error_response(create_pdf_error(FILE_TOO_LARGE), 413)

@app.route('/api/compress_pdf', methods=['POST'])
def api_compress_pdf():
    try:
        input_pdf = request.files.get('input_pdf')
        session_id = request.form.get('session_id')

        if not input_pdf or not input_pdf.filename:
            return jsonify({'success': False, 'error': 'Missing required fields.'}), 400
        if not allowed_file(input_pdf.filename):
            return error_response(create_pdf_error(INVALID_FILE_TYPE, input_pdf.filename), 400)

        try:
            target_percent, settings = parse_job_settings(request.form)
        except ValueError as e:
            return jsonify({'success': False, 'error': f'Invalid settings: {e}'}), 400

        prune_finished_jobs(compress_progress)

        # Generate job ID for progress tracking
        job_id = str(uuid.uuid4())
        input_path, output_path = job_paths(app.config['UPLOAD_FOLDER'], job_id, input_pdf.filename)
        input_pdf.save(input_path)

        # Initialize the progress entry before starting thread
        start_compress_job(job_id, compress_progress, session_id)

        # Start compress in background thread
        compress_thread = threading.Thread(
            target=compress_pdf_with_progress,
            args=(job_id, input_path, output_path, target_percent, settings, compress_progress, session_id)
        )
        compress_thread.daemon = True
        compress_thread.start()

        # Return job ID for progress tracking
        return jsonify({'success': True, 'job_id': job_id})
    except Exception as e:
        logging.error(f"Error starting compress job: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500

@app.route('/api/compress_progress/<job_id>')
def get_compress_progress(job_id):
    """Get progress for a compress job"""
    if job_id in compress_progress:
        entry = {k: v for k, v in compress_progress[job_id].items() if k != 'filename'}
        return jsonify(entry)
    else:
        return jsonify({'error': 'Job not found'}), 404

@app.route('/api/cancel_compress/<job_id>', methods=['POST'])
def cancel_compress(job_id):
    """Cancel a compress job"""
    try:
        if job_id in compress_progress:
            if compress_progress[job_id].get('status') in ('complete', 'error', 'cancelled'):
                return jsonify({'success': False, 'error': 'Job already finished'}), 409
            # Mark the job as cancelled
            compress_progress[job_id]['cancelled'] = True
            compress_progress[job_id]['message'] = 'Cancelling...'
            logging.info(f"Marked compress job {job_id} for cancellation")
            return jsonify({'success': True, 'message': 'Job marked for cancellation'})
        else:
            return jsonify({'success': False, 'error': 'Job not found'}), 404
    except Exception as e:
        logging.error(f"Error cancelling compress job {job_id}: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500

@app.route('/api/settings_for_target/<int:percent>')
def get_settings_for_target(percent):
    """Preview the settings a target percentage maps to"""
    settings = settings_for_target_percent(percent)
    return jsonify({
        'target_percent': clamp_target_percent(percent),
        'settings': settings.to_dict(),
        'enabled_methods': settings.enabled_method_count()
    })

@app.route('/api/compression_potential/<job_id>')
def get_compression_potential(job_id):
    """Potential per risk tier for a completed job, plus the methods needed for a target"""
    entry = compress_progress.get(job_id)
    if entry is None:
        return jsonify({'error': 'Job not found'}), 404
    if entry.get('status') != 'complete':
        return jsonify({'error': 'Job is not complete'}), 409

    try:
        original_size = entry['original_size']
        measurements = [MethodMeasurement.from_dict(m) for m in entry.get('measurements', [])]
        potential = calculate_compression_potential(original_size, measurements)
        response = {'success': True, 'potential': potential.to_dict()}

        target_percent = request.args.get('target_percent', type=int)
        if target_percent is not None:
            target_bytes = target_bytes_for_percent(original_size, target_percent)
            selected = select_methods_for_target(original_size, target_bytes, measurements)
            response.update({
                'target_percent': clamp_target_percent(target_percent),
                'target_bytes': target_bytes,
                'selected_methods': sorted(selected)
            })
        return jsonify(response)
    except Exception as e:
        logging.error(f"Error calculating potential for job {job_id}: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500

@app.route('/download/<job_id>')
def download_file(job_id):
    """Download route for compressed files"""
    try:
        entry = compress_progress.get(job_id)
        if entry is None or entry.get('status') != 'complete':
            return "File not found", 404

        file_path = entry.get('filename')
        if not file_path or not os.path.exists(file_path):
            return "File not found", 404

        return send_from_directory(os.path.dirname(file_path), os.path.basename(file_path),
                                   as_attachment=True, download_name='compressed.pdf')
    except Exception as e:
        logging.error(f"Download error: {str(e)}")
        return "Download failed", 500

if __name__ == '__main__':
    app.run(debug=DEBUG, port=int(os.getenv('PORT', '5000')))
