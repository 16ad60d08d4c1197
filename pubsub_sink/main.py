import logging
from multiprocessing import Process

import pubsub_sink.config_init as config_init
from common.communicator import HealthListener
from common.logger import config_logger
from pubsub_sink.sink import ShardedSink


def main():
    config = config_init.config_sink()
    config_logger(config["logging_level"])

    hc_process = None
    if config["hc_port"]:
        hc_process = Process(target=run_health_listener, args=(config["hc_port"],))
        hc_process.start()

    try:
        sink = ShardedSink(config)
        sink.run()

    except KeyboardInterrupt:
        logging.info("Sink stopped by user")
    except Exception as e:
        logging.error(f"Sink error: {e}", exc_info=True)
        raise
    finally:
        if hc_process is not None:
            hc_process.terminate()
            hc_process.join()
        logging.info("Sink stopped")


def run_health_listener(port):
    HealthListener(port).start()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    logging.info("Starting pubsub sink module")
    main()
