from django.dispatch import Signal

# Sent once when a job's transcoder first reaches FINISHED. The host connects
# a receiver that makes content referencing `content_hash` visible again.
transcode_finished = Signal()
