#!/usr/bin/env python3
# brickd - MQTT Bridge
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Connects to a local brickd daemon, watches the POWER subsystem and
# publishes battery voltage, board serial and battery notices to an MQTT
# broker for HomeAssistant integration.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""
MQTT Bridge for brickd
Publishes battery data for HomeAssistant integration

This bridge connects to brickd via the BrickdClient library, watches the
POWER subsystem and publishes the battery voltage and the latest battery
notice (low / critical warnings) to an MQTT broker with HomeAssistant
discovery configs.

Usage:
    scripts/mqtt_client.py --broker 192.168.1.10 --interval 5
"""

import argparse
import json
import logging
import signal
import sys
import time

import paho.mqtt.client as mqtt

# Add parent directory to path so we can import brickd
sys.path.insert(0, '.')

from brickd import BrickdClient
from brickd.protocol import DEFAULT_PORT, POWER, SERIAL_KEY, VOLTAGE_KEY

log = logging.getLogger(__name__)

# Topic configuration
AVAILABILITY_TOPIC = "brickd/battery/availability"
STATE_TOPIC = "brickd/battery/state"
NOTICE_TOPIC = "brickd/battery/notice"

# Device configuration for HomeAssistant
DEVICE_CONFIG = {
    "identifiers": ["brickd"],
    "name": "brickd Battery",
    "manufacturer": "ev3dev",
    "model": "brickd",
    "sw_version": "1.1.0"
}

# Sensor configurations for HomeAssistant discovery
SENSOR_CONFIGS = {
    "battery_voltage": {
        "name": "Battery Voltage",
        "state_topic": STATE_TOPIC,
        "value_template": "{{ value_json.battery_voltage }}",
        "unit_of_measurement": "mV",
        "device_class": "voltage",
        "state_class": "measurement",
        "availability_topic": AVAILABILITY_TOPIC,
        "unique_id": "brickd_battery_voltage",
        "device": DEVICE_CONFIG
    },
    "battery_notice": {
        "name": "Battery Notice",
        "state_topic": STATE_TOPIC,
        "value_template": "{{ value_json.battery_notice }}",
        "availability_topic": AVAILABILITY_TOPIC,
        "unique_id": "brickd_battery_notice",
        "device": DEVICE_CONFIG
    },
    "board_serial": {
        "name": "Board Serial",
        "state_topic": STATE_TOPIC,
        "value_template": "{{ value_json.board_serial }}",
        "entity_category": "diagnostic",
        "availability_topic": AVAILABILITY_TOPIC,
        "unique_id": "brickd_board_serial",
        "device": DEVICE_CONFIG
    },
}


class BrickdMQTTBridge:
    def __init__(self, brickd_host="127.0.0.1", brickd_port=DEFAULT_PORT, broker="localhost", port=1883,
                 username=None, password=None):
        self.brickd_host = brickd_host
        self.brickd_port = brickd_port
        self.broker = broker
        self.mqtt_port = port
        self.username = username
        self.password = password
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id="brickd_bridge")
        self.running = True

        # brickd connection - calls the client library
        self.brickd = BrickdClient(host=brickd_host, port=brickd_port, on_message=self.on_brickd_message)

        # Static once read
        self.serial = None

        # Track brickd connection state for detecting disconnect/reconnect
        self.brickd_was_connected = False
        self.watching = False

        # Set up callbacks
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect

    def on_connect(self, client, userdata, connect_flags, reason_code, properties):
        """Callback for when the client connects to the broker"""
        if reason_code == 0:
            log.info(f"Connected to MQTT broker at {self.broker}:{self.mqtt_port}")
        else:
            log.error(f"Failed to connect to MQTT broker, return code {reason_code}")

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        """Callback for when the client disconnects from the broker"""
        log.info(f"Disconnected from MQTT broker (code: {reason_code})")

    def on_brickd_message(self, msg):
        """Forward WARN/CRITICAL notices immediately; they may precede a poweroff"""
        if msg.get("type") != "MSG":
            return
        payload = json.dumps({"level": msg["level"], "message": msg["message"]})
        self.client.publish(NOTICE_TOPIC, payload, qos=1, retain=False)
        log.debug(f"Published notice: {payload}")

    def publish_config(self):
        """Publish sensor configurations for HomeAssistant autodiscovery"""
        log.debug("Publishing sensor configurations...")
        for sensor_id, config in SENSOR_CONFIGS.items():
            topic = f"homeassistant/sensor/brickd/{sensor_id}/config"
            payload = json.dumps(config)
            self.client.publish(topic, payload, qos=1, retain=True)
            log.debug(f"Published config for {sensor_id}")

    def publish_state(self, state_data):
        """Publish current battery state"""
        payload = json.dumps(state_data)
        self.client.publish(STATE_TOPIC, payload, qos=1, retain=True)
        log.debug(f"Published state: {payload}")

    def get_battery_status(self):
        """Collect the current values from the brickd client and format for MQTT"""
        voltage = self.brickd.get_property(VOLTAGE_KEY)
        if voltage is None:
            # nothing broadcast yet; ask directly
            voltage = self.brickd.get(VOLTAGE_KEY)
        notice = self.brickd.get_last_notice()
        return {
            "battery_voltage": voltage,
            "battery_notice": notice["message"] if notice else "OK",
            "board_serial": self.serial,
        }

    def on_brickd_connected(self):
        """Runs after each (re)connect to brickd"""
        if not self.watching:
            self.watching = self.brickd.watch(POWER)
            if not self.watching:
                log.warning("brickd refused WATCH POWER")
        if self.serial is None:
            self.serial = self.brickd.get(SERIAL_KEY)

    def connect(self):
        """Connect to brickd and the MQTT broker"""
        log.debug(f"Connecting to brickd at {self.brickd_host}:{self.brickd_port}...")
        self.brickd.start()

        if self.username and self.password:
            self.client.username_pw_set(self.username, self.password)
        self.client.will_set(AVAILABILITY_TOPIC, "offline", qos=1, retain=True)

        try:
            log.debug(f"Connecting to MQTT broker at {self.broker}:{self.mqtt_port}...")
            self.client.connect(self.broker, self.mqtt_port, keepalive=60)
            self.client.loop_start()
            time.sleep(1)  # Give connection time to establish
            return True
        except OSError as e:
            log.error(f"Failed to connect to MQTT broker: {e}")
            self.brickd.stop()
            return False

    def disconnect(self):
        """Disconnect from the MQTT broker and brickd"""
        log.info("Shutting down...")
        self.client.publish(AVAILABILITY_TOPIC, "offline", qos=1, retain=True)
        time.sleep(0.5)  # Give publish time to complete
        self.client.loop_stop()
        self.client.disconnect()
        self.brickd.stop()
        self.running = False

    def run(self, interval=5):
        """Main loop - publish battery data to MQTT"""
        if not self.connect():
            return

        self.publish_config()
        log.info(f"Publishing battery status every {interval} second(s)...")

        try:
            while self.running:
                conn_status = self.brickd.get_connection_status()
                brickd_is_connected = conn_status.get('connected', False)

                if brickd_is_connected != self.brickd_was_connected:
                    if brickd_is_connected:
                        log.info("brickd connected")
                        self.on_brickd_connected()
                        self.client.publish(AVAILABILITY_TOPIC, "online", qos=1, retain=True)
                    else:
                        error_msg = conn_status.get('last_error') or 'Unknown error'
                        log.info(f"brickd disconnected: {error_msg}")
                        self.client.publish(AVAILABILITY_TOPIC, "offline", qos=1, retain=True)
                    self.brickd_was_connected = brickd_is_connected

                if brickd_is_connected:
                    self.publish_state(self.get_battery_status())

                # Wake early when brickd broadcasts something
                self.brickd.wait_for_update(timeout=interval)
                self.brickd.clear_update()

        except KeyboardInterrupt:
            log.info("Interrupted by user")
            self.disconnect()

    def signal_handler(self, sig, frame):
        """Handle termination signals gracefully (SIGINT from Ctrl+C, SIGTERM from kill)"""
        self.disconnect()
        sys.exit(0)


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="MQTT bridge for brickd")
    parser.add_argument("--brickd-host", default="127.0.0.1", help="brickd address (default: 127.0.0.1)")
    parser.add_argument("--brickd-port", default=DEFAULT_PORT, type=int,
                        help=f"brickd port (default: {DEFAULT_PORT})")
    parser.add_argument("--broker", default="localhost", help="MQTT broker hostname (default: localhost)")
    parser.add_argument("--mqtt-port", default=1883, type=int, help="MQTT broker port (default: 1883)")
    parser.add_argument("--username", default=None, help="MQTT username")
    parser.add_argument("--password", default=None, help="MQTT password")
    parser.add_argument("--interval", default=5, type=int, help="Publish interval in seconds (default: 5)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    args = parser.parse_args()

    # Configure logging with timestamp
    log_level = logging.DEBUG if args.verbose else logging.WARNING
    log_format = '[%(asctime)s] %(levelname)s: %(message)s'
    logging.basicConfig(level=log_level, format=log_format, datefmt='%H:%M:%S')

    bridge = BrickdMQTTBridge(
        brickd_host=args.brickd_host,
        brickd_port=args.brickd_port,
        broker=args.broker,
        port=args.mqtt_port,
        username=args.username,
        password=args.password
    )

    # Set up signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, bridge.signal_handler)
    signal.signal(signal.SIGTERM, bridge.signal_handler)

    bridge.run(interval=args.interval)


if __name__ == "__main__":
    main()
