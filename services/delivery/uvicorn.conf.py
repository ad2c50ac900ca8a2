import os

app = "main:app"
host = "0.0.0.0"
port = int(os.getenv("PORT", "9003"))
# one worker: in-flight deliveries live in the process's simulator pool
workers = int(os.getenv("UVICORN_WORKERS", "1"))
loop = "uvloop"  # requires uvicorn[standard]
http = "h11"
log_level = os.getenv("LOG_LEVEL", "info")
