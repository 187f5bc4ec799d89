from calsync import create_app

app = create_app()

# Run a single gunicorn worker per host so only one scheduler polls the outbox:
#   gunicorn -w 1 --threads 4 wsgi:app
# Additional hosts are safe; outbox claims are atomic across processes.
