from configparser import ConfigParser
import os

CONFIG_FILE = os.path.join(os.path.dirname(__file__), "config.ini")

SHARDS_PER_CPU = 4


def config_sink(config_file=CONFIG_FILE):
    """ Parse env variables or config file to find program config params

    Function that search and parse program configuration parameters in the
    program environment variables first and then in a config file.
    If at least one of the config parameters is not found a KeyError exception
    is thrown. If a parameter could not be parsed, a ValueError is thrown.
    If parsing succeeded, the function returns a dict with config parameters
    """
    config_params = {}
    sink_config = ConfigParser(os.environ, interpolation=None)
    sink_config.read(config_file)

    try:
        # GENERAL
        config_params["logging_level"] = os.getenv('LOGGING_LEVEL', sink_config["DEFAULT"]["LOGGING_LEVEL"])
        config_params["hc_port"] = int(os.getenv('HC_PORT', sink_config["DEFAULT"]["HC_PORT"]))
        config_params["backup_dir"] = os.getenv('BACKUP_DIR', sink_config["DEFAULT"]["BACKUP_DIR"]).strip() or None

        # RCV QUEUE
        config_params["rabbit_host"] = os.getenv('RABBIT_HOST', sink_config["RABBITMQ"]["RABBIT_HOST"])
        config_params["exchange_rcv"] = os.getenv('EXCHANGE_RCV', sink_config["RABBITMQ"]["EXCHANGE_RCV"])
        config_params["exc_rcv_type"] = os.getenv('TYPE_RCV', sink_config["RABBITMQ"]["TYPE_RCV"])
        config_params["queue_rcv_name"] = os.getenv('QUEUE_RCV_NAME', sink_config["RABBITMQ"]["QUEUE_RCV_NAME"])
        config_params["routing_rcv_key"] = os.getenv('ROUTING_KEY_RCV', sink_config["RABBITMQ"]["ROUTING_KEY_RCV"])

        # PUBLISH TOPIC
        config_params["topic"] = os.getenv('TOPIC', sink_config["RABBITMQ"]["TOPIC"])
        config_params["exc_snd_type"] = os.getenv('TYPE_SND', sink_config["RABBITMQ"]["TYPE_SND"])
        config_params["routing_snd_key"] = os.getenv('ROUTING_KEY_SND', sink_config["RABBITMQ"]["ROUTING_KEY_SND"])
        config_params["mandatory"] = _parse_bool("MANDATORY", os.getenv('MANDATORY', sink_config["RABBITMQ"]["MANDATORY"]))

        # SINK
        config_params["timestamp_label"] = os.getenv('TIMESTAMP_LABEL', sink_config["SINK"]["TIMESTAMP_LABEL"]).strip() or None
        config_params["id_label"] = os.getenv('ID_LABEL', sink_config["SINK"]["ID_LABEL"]).strip() or None
        num_shards = int(os.getenv('NUM_SHARDS', sink_config["SINK"]["NUM_SHARDS"]))
        config_params["num_shards"] = num_shards or SHARDS_PER_CPU * (os.cpu_count() or 1)
        config_params["publish_batch_size"] = int(os.getenv('PUBLISH_BATCH_SIZE', sink_config["SINK"]["PUBLISH_BATCH_SIZE"]))
        config_params["publish_batch_bytes"] = int(os.getenv('PUBLISH_BATCH_BYTES', sink_config["SINK"]["PUBLISH_BATCH_BYTES"]))
        config_params["max_latency"] = float(os.getenv('MAX_LATENCY_SECONDS', sink_config["SINK"]["MAX_LATENCY_SECONDS"]))
        config_params["record_id_method"] = os.getenv('RECORD_ID_METHOD', sink_config["SINK"]["RECORD_ID_METHOD"]).strip().upper()
        config_params["element_codec"] = os.getenv('ELEMENT_CODEC', sink_config["SINK"]["ELEMENT_CODEC"]).strip().lower()

        for key in ("num_shards", "publish_batch_size", "publish_batch_bytes", "max_latency"):
            if config_params[key] <= 0:
                raise ValueError(f"{key.upper()} must be positive, got {config_params[key]}")
        if config_params["hc_port"] < 0:
            raise ValueError(f"HC_PORT must not be negative, got {config_params['hc_port']}")
        if config_params["record_id_method"] not in ("NONE", "RANDOM", "DETERMINISTIC"):
            raise ValueError(f"Invalid RECORD_ID_METHOD: {config_params['record_id_method']}")

    except KeyError as e:
        raise KeyError(f"Required key was not found in {config_file} or Env Vars. Error: {e} .Aborting sink")
    except ValueError as e:
        raise ValueError(f"Key could not be parsed in {config_file} or Env Vars. Error: {e}. Aborting sink")

    return config_params


def _parse_bool(name, value):
    value = value.strip().lower()
    if value == 'true':
        return True
    if value == 'false':
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value}")
