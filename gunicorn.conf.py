import multiprocessing, os

wsgi_app = "app:app"
bind = "0.0.0.0:" + os.getenv("PORT", "4000")
# Quiz state lives in the signed cookie, so any worker can serve any request
workers = int(os.getenv("WEB_CONCURRENCY", str(max(2, multiprocessing.cpu_count()))))
threads = 2
timeout = 60
graceful_timeout = 30
keepalive = 5
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
