# brickd - Battery Thermal Model
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Estimates the internal temperature of a battery pack from a stream of
# voltage/current samples using a two-node (battery, electronics) Newtonian
# heat model with a voltage-dependent internal resistance curve.
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

"""brickd.thermal

Battery temperature estimation for boards that have no temperature sensor
on the battery pack (the EV3 running on AA cells is the main user).

The model tracks two lumped thermal masses:

- the battery pack, heated by I^2 * R losses in its internal resistance
- the board electronics, heated at a constant rate

Each node exchanges heat with the other node and loses heat to the room.
All temperatures are on the model's own scale (both nodes start at 0) and
are compared directly against the profile's warn/shutdown limits.

The internal resistance is derived from two quartic reference curves of
voltage (one measured at low current, one at 2 A) and interpolated for the
running mean current. Resistance rises follow the model at full weight;
falls are applied through ``R_BAT_NEG_GAIN``.

``ThermalEstimator.update`` must be called once per ``SAMPLE_PERIOD``.
"""
from __future__ import annotations

from dataclasses import dataclass

# Algorithm update period in seconds. Monitors that enable thermal tracking
# must poll at exactly this rate.
SAMPLE_PERIOD = 0.4

# Approx. initial internal resistance of 6 AA industrial cells (ohms)
R_BAT_INIT = 0.63468
# Voltage above which the pack is considered freshly charged (volts)
R_BAT_RESET_VOLTAGE = 7.5
# Gain applied when the modeled resistance falls
R_BAT_NEG_GAIN = 1.00

# Battery node
HEAT_CAP_BAT = 136.6598
BATTERY_POWER_BOOST = 1.7
K_BAT_LOSS_TO_ELEC = -0.0003
K_BAT_GAIN_FROM_ELEC = 0.001242896
K_BAT_TO_ROOM = -0.00012

# Electronics node
K_ELEC_HEAT_SLOPE = 0.0123175  # deg C / s, linear self-heating
K_ELEC_LOSS_TO_BAT = -0.004137487
K_ELEC_GAIN_FROM_BAT = 0.002027574
K_ELEC_TO_ROOM = -0.001931431

# Anchor currents of the two resistance reference curves (amps)
I_LOW = 0.05
I_HIGH = 2.0


@dataclass
class ThermalModelState:
    """Mutable state carried between samples for one monitored supply."""

    index: int = 0
    i_bat_mean: float = 0.0
    t_bat: float = 0.0
    t_elec: float = 0.0
    r_bat_model_old: float = 0.0
    r_bat: float = 0.0
    has_passed_reset_voltage: bool = False


def resistance_low(v_bat: float) -> float:
    """Internal resistance at low continuous current as a function of voltage."""
    return (0.014071 * v_bat ** 4
            - 0.335324 * v_bat ** 3
            + 2.933404 * v_bat ** 2
            - 11.243047 * v_bat
            + 16.897461)


def resistance_high(v_bat: float) -> float:
    """Internal resistance at 2 A continuous current as a function of voltage."""
    return (0.014420 * v_bat ** 4
            - 0.316728 * v_bat ** 3
            + 2.559347 * v_bat ** 2
            - 9.084076 * v_bat
            + 12.794176)


def _transfer(k: float, delta: float, period: float) -> float:
    # Newtonian exchange only flows while the driving difference is positive
    if delta > 0:
        return k * delta * period
    return 0.0


class ThermalEstimator:
    """Two-node battery temperature estimator.

    Deterministic given its prior state and the sample stream; it never
    raises for numeric input.
    """

    def __init__(self, sample_period: float = SAMPLE_PERIOD):
        self.sample_period = float(sample_period)
        self.state = ThermalModelState()

    @property
    def temperature(self) -> float:
        return self.state.t_bat

    def _model_resistance(self, v_bat: float, i_mean: float) -> float:
        r_low = resistance_low(v_bat)
        r_high = resistance_high(v_bat)
        slope = (r_low - r_high) / (I_LOW - I_HIGH)
        return r_low + slope * (i_mean - I_LOW)

    def update(self, v_bat: float, i_bat: float) -> float:
        """Feed one sample (volts, amps) and return the battery temperature."""
        st = self.state
        dt = self.sample_period

        if st.index > 0:
            st.i_bat_mean = (st.index * st.i_bat_mean + i_bat) / (st.index + 1)
        else:
            st.i_bat_mean = i_bat
        st.index += 1

        r_model = self._model_resistance(v_bat, st.i_bat_mean)

        if v_bat > R_BAT_RESET_VOLTAGE and not st.has_passed_reset_voltage:
            st.r_bat = R_BAT_INIT
        else:
            change = r_model - st.r_bat_model_old
            if change > 0:
                st.r_bat += change
            else:
                st.r_bat += R_BAT_NEG_GAIN * change
            st.has_passed_reset_voltage = True
        st.r_bat_model_old = r_model

        t_bat, t_elec = st.t_bat, st.t_elec

        d_bat = (st.r_bat * i_bat * i_bat * dt * BATTERY_POWER_BOOST / HEAT_CAP_BAT
                 + _transfer(K_BAT_LOSS_TO_ELEC, t_bat - t_elec, dt)
                 + _transfer(K_BAT_GAIN_FROM_ELEC, t_elec - t_bat, dt)
                 + K_BAT_TO_ROOM * t_bat * dt)

        d_elec = (K_ELEC_HEAT_SLOPE * dt
                  + _transfer(K_ELEC_LOSS_TO_BAT, t_elec - t_bat, dt)
                  + _transfer(K_ELEC_GAIN_FROM_BAT, t_bat - t_elec, dt)
                  + K_ELEC_TO_ROOM * t_elec * dt)

        st.t_bat = t_bat + d_bat
        st.t_elec = t_elec + d_elec
        return st.t_bat
