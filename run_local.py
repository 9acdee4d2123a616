import os
from dotenv import load_dotenv

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
env_path = os.path.join(BASE_DIR, '.env')
load_dotenv(env_path)

from api.index import app  # noqa: E402  (load_dotenv needs to run first)

if __name__ == '__main__':
    port = int(os.environ.get('PORT', '5001'))
    print(f"🚀 Starting AI Business Advisor API locally at http://localhost:{port}")
    app.run(port=port, debug=True)
