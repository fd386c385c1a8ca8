# tests/conftest.py
import os
import sys

import pytest

root_path = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if root_path not in sys.path:
    sys.path.insert(0, root_path)


class FakeReader:
    """Stands in for sysfs: attribute values in micro-units, per attribute."""

    def __init__(self, voltage_mv=7620, current_ma=0):
        self.values = {}
        self.failing = set()
        self.calls = []
        self.set_voltage(voltage_mv)
        self.set_current(current_ma)

    def set_voltage(self, mv):
        self.values["voltage_now"] = f"{mv * 1000}\n"

    def set_current(self, ma):
        self.values["current_now"] = f"{ma * 1000}\n"

    def __call__(self, supply, attribute):
        self.calls.append((supply.key, attribute))
        if attribute in self.failing:
            raise OSError(f"cannot read {attribute}")
        return self.values[attribute]


@pytest.fixture
def reader():
    return FakeReader()


EV3_LI_ION_ATTRS = {
    "POWER_SUPPLY_NAME": "lego-ev3-battery",
    "POWER_SUPPLY_TYPE": "Battery",
    "POWER_SUPPLY_SCOPE": "System",
    "POWER_SUPPLY_TECHNOLOGY": "Li-ion",
}

EV3_AA_ATTRS = {
    "POWER_SUPPLY_NAME": "lego-ev3-battery",
    "POWER_SUPPLY_TYPE": "Battery",
    "POWER_SUPPLY_SCOPE": "System",
    "POWER_SUPPLY_TECHNOLOGY": "Unknown",
}


@pytest.fixture
def ev3_attrs():
    return dict(EV3_LI_ION_ATTRS)


@pytest.fixture
def ev3_aa_attrs():
    return dict(EV3_AA_ATTRS)
