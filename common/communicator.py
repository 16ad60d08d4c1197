import logging
import signal
import socket

ALIVE = b"\x01"


class HealthListener:
    """Answers health-check probes on a TCP port with a single ALIVE byte.

    Meant to run in its own process next to the sink, so a sink blocked on a
    slow broker is still reported alive while it makes progress.
    """

    def __init__(self, port, listen_backlog=10):
        self.port = port
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.socket.bind(('', port))
        self.socket.listen(listen_backlog)
        self.running = True

    def _handle_shutdown(self, _sig, _frame):
        logging.info("[HealthListener] Graceful exit")
        self.stop()

    def start(self):
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)
        logging.info(f"[HealthListener] Listening on port {self.port}")

        while self.running:
            try:
                conn, _ = self.socket.accept()
            except OSError as e:
                if self.running:
                    logging.error(f"[HealthListener] Error accepting connection: {e}")
                continue
            with conn:
                try:
                    conn.sendall(ALIVE)
                except OSError as e:
                    logging.warning(f"[HealthListener] Could not answer probe: {e}")

    def stop(self):
        logging.info("[HealthListener] Stopping")
        self.running = False
        if self.socket:
            self.socket.close()
