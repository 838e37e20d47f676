from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

GRANT_REDEMPTIONS = Counter(
    "download_grant_redemptions_total",
    "Download grant redemption attempts by outcome",
    ["outcome"],
)
SWEEP_DELETIONS = Counter(
    "expired_records_deleted_total",
    "Records removed by the expiry sweep",
    ["table"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
