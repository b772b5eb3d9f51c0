import logging
import os
import subprocess
import sys

from dotenv import load_dotenv

from customer_server import create_app


def start_sync_worker():
    if os.getenv('SYNC_WORKER_AUTO_START', '0') != '1':
        return None
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        return None
    script_path = os.path.join(os.path.dirname(__file__), 'sync_worker.py')
    if not os.path.exists(script_path):
        return None
    return subprocess.Popen([sys.executable, script_path], env=os.environ.copy())


if __name__ == '__main__':
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(message)s')
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    worker_proc = start_sync_worker()
    try:
        create_app().run(host=host, port=port, debug=debug)
    finally:
        if worker_proc:
            worker_proc.terminate()
