from indexer.worker.routes import worker


class WorkerSettings:
    functions = worker.functions
    redis_settings = worker.redis_settings
    on_startup = worker.on_startup
    on_shutdown = worker.on_shutdown
    queue_name = worker.queue_name
    job_timeout = worker.job_timeout
    max_jobs = worker.max_jobs
    max_tries = worker.max_tries
    retry_jobs = worker.retry_jobs
    keep_result = worker.keep_result
    health_check_interval = worker.health_check_interval
