"""
imu_speed — inertial dead-reckoning speedometer

Modules
-------
config         Tunables of the estimation pipeline
imu_driver     Sample sources: serial packet decode, CSV replay
calibration    Stillness bias estimation
ring_buffer    Fixed-size numpy ring buffer
estimator      EMA filter, ZUPT integration, speed smoothing, state machine
readouts       Text readouts for the display shells
speedometer    Console speedometer application
dashboard      Live matplotlib dashboard
"""
