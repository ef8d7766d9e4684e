# run.py
from fashion_shop.config import Config
from fashion_shop.main import app

if __name__ == "__main__":
    # Jobs started by fashion_shop.main run in this process; the reloader
    # would start a second copy of them.
    app.run(
        debug=Config.DEBUG,
        host=Config.FLASK_RUN_HOST,
        port=Config.FLASK_RUN_PORT,
        use_reloader=False,
    )
