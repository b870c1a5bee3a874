import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel
import uvicorn
from threading import Thread

logger = logging.getLogger("faceblur_worker")


class DeadLetterModel(BaseModel):
    job_id: str
    queue_name: str
    job_type: str
    payload: Dict[str, Any]
    last_error: Optional[str] = None
    attempts: int
    failed_at: Optional[datetime] = None


class QueueDepthModel(BaseModel):
    queue_name: str
    pending: int


class HealthServer:
    def __init__(self, service, port: int = 8000):
        self.service = service
        self.port = port
        self.app = FastAPI(title="Face Redaction Worker Health API")
        self.setup_routes()
        self.server_thread = None
        self.server = None
        self.running = False

    def _queues(self):
        return [q for q in (self.service.processing_queue, self.service.webhook_queue) if q is not None]

    def setup_routes(self):
        """Setup API routes"""

        @self.app.get("/healthz")
        def health_check():
            """Health check endpoint"""
            try:
                # Test status store connection
                self.service.status_store.get_stats()
                return {"ok": True, "status": "healthy"}
            except Exception as e:
                logger.error(f"Health check failed: {str(e)}")
                raise HTTPException(status_code=503, detail=f"Status store unavailable: {str(e)}")

        @self.app.get("/jobs/peek", response_model=List[QueueDepthModel])
        def peek_jobs():
            """Pending job counts per queue (dev only)"""
            try:
                return [QueueDepthModel(queue_name=q.name, pending=q.pending_count()) for q in self._queues()]
            except Exception as e:
                logger.error(f"Error peeking jobs: {str(e)}")
                raise HTTPException(status_code=500, detail=f"Error fetching jobs: {str(e)}")

        @self.app.get("/dead-letters/{queue_name}", response_model=List[DeadLetterModel])
        def dead_letters(queue_name: str, limit: int = Query(50, ge=1, le=500)):
            """Jobs that exhausted their attempts on one queue"""
            queue = next((q for q in self._queues() if q.name == queue_name), None)
            if queue is None:
                raise HTTPException(status_code=404, detail=f"Unknown queue: {queue_name}")
            try:
                return [DeadLetterModel(**letter.__dict__) for letter in queue.dead_letters(limit)]
            except Exception as e:
                logger.error(f"Error reading dead letters: {str(e)}")
                raise HTTPException(status_code=500, detail=f"Error fetching dead letters: {str(e)}")

        @self.app.get("/stats")
        def get_stats():
            """Get worker statistics"""
            try:
                stats = self.service.get_stats()
                stats["store"] = self.service.status_store.get_stats()
                return stats
            except Exception as e:
                logger.error(f"Error getting stats: {str(e)}")
                raise HTTPException(status_code=500, detail=f"Error fetching stats: {str(e)}")

    def start(self):
        """Start the HTTP server in a background thread"""
        if self.running:
            return

        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.port,
            log_level="warning",  # Reduce uvicorn logging
            access_log=False
        )
        self.server = uvicorn.Server(config)

        def run_server():
            try:
                self.server.run()
            except Exception as e:
                logger.error(f"HTTP server error: {str(e)}")

        self.server_thread = Thread(target=run_server, name="health-server", daemon=True)
        self.server_thread.start()
        self.running = True

        logger.info(f"Health server started on port {self.port}")

    def stop(self):
        """Stop the HTTP server"""
        if self.server:
            self.server.should_exit = True
        self.running = False
        logger.info("Health server stopped")


def start_health_server(service) -> Optional[HealthServer]:
    """Start the health server if enabled"""
    if service.config.ENABLE_HTTP_SERVER:
        server = HealthServer(service, service.config.HTTP_PORT)
        server.start()
        return server
    return None
