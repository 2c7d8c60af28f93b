import os
from pathlib import Path
from dotenv import load_dotenv

"""Load environment variables from a local .env file if present.

Order of precedence:
- ENV_FILE env var path, if set
- .env.dev in the working directory, if exists
- .env in the working directory, if exists
"""

_env_file = os.getenv("ENV_FILE")
if _env_file:
    load_dotenv(_env_file)
else:
    if Path(".env.dev").exists():
        load_dotenv(".env.dev")
    elif Path(".env").exists():
        load_dotenv(".env")


# Upper bound on header block plus payload accepted by the hub
MAX_IOT_MSG_SIZE = 256 * 1024


class IoTSendConfig:
    """iotsend configuration settings"""

    # MQTT broker settings
    BROKER_HOST = os.getenv('MQTT_BROKER_HOST', 'localhost')
    BROKER_PORT = int(os.getenv('MQTT_BROKER_PORT', 1883))
    CLIENT_ID = os.getenv('MQTT_CLIENT_ID', 'iotsend')
    USERNAME = os.getenv('MQTT_USERNAME', None)
    PASSWORD = os.getenv('MQTT_PASSWORD', None)
    KEEPALIVE = int(os.getenv('MQTT_KEEPALIVE', 60))

    # Message settings
    TOPIC_PREFIX = os.getenv('TOPIC_PREFIX', 'iothub')
    TOPIC = os.getenv('IOTSEND_TOPIC', f"{TOPIC_PREFIX}/messages")
    MAX_MESSAGE_SIZE = int(os.getenv('MAX_IOT_MSG_SIZE', MAX_IOT_MSG_SIZE))

    # QoS settings (0, 1, or 2)
    QOS = int(os.getenv('MQTT_QOS', os.getenv('QOS', 1)))

    # Connection settings, timeouts in seconds
    CLEAN_SESSION = True
    CONNECT_TIMEOUT = float(os.getenv('MQTT_CONNECT_TIMEOUT', 10))
    PUBLISH_TIMEOUT = float(os.getenv('MQTT_PUBLISH_TIMEOUT', 10))
