import logging
import time

from cobot_control import CobotConfig, CobotInterface
from cobot_control.exceptions import ConnectError, InitError

logging.basicConfig(level=logging.INFO)

# create interface and connect
# Use mock=True to run against the simulated controller
cobot = CobotInterface(CobotConfig(poll_interval_s=0.05, init_max_attempts=3), mock=False)

try:
    cobot.connect('/dev/ttyUSB0', 115200)
    cobot.initialize()
except (ConnectError, InitError) as e:
    print(f"Could not bring the arm up: {e}")
    raise SystemExit(1)

try:
    # run this once after power-up to calibrate all joints
    # cobot.calibrate(0b111111)

    # move the elbow and wait for telemetry to catch up
    cobot.move_to(2, 45, 30)
    while cobot.joints[2].moving:
        time.sleep(0.1)

    # print some info
    for joint in cobot.joints:
        print(f"{joint.name}: {joint.measured_angle:.3f} deg")
finally:
    cobot.stop_all()
    cobot.disconnect()
