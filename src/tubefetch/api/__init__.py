"""HTTP boundary: enqueue endpoints, job status, SSE progress and file serving."""
