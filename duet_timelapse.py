#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# Copyright 2026 Brian Warner
"""
Duet 3D Printer Timelapse Monitor

This script polls a RepRapFirmware (Duet) printer over HTTP, captures still
frames from a network MJPEG source while a print is running, and assembles
them into a timelapse video with ffmpeg when the print completes.
"""

import os
import sys
import time
from collections import namedtuple
from datetime import datetime
from enum import Enum
from pathlib import Path
from dotenv import find_dotenv, load_dotenv
import logging

# Import shared library functions
import duet_lib

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
UNKNOWN_JOB_NAME = "unknown"


class StartupError(Exception):
    """Raised when the watcher cannot enter its polling loop."""


class PrinterStatus(Enum):
    """Status letters reported by rr_status."""

    PRINTING = "P"
    FLASHING_FIRMWARE = "F"
    HALTED = "H"
    PAUSING = "D"
    PAUSED = "S"
    RESUMING = "R"
    SIMULATING = "M"
    BUSY = "B"
    CHANGING_TOOL = "T"
    IDLE = "I"
    UNKNOWN = "unknown"
    QUERY_FAILED = "query_failed"

    @classmethod
    def from_code(cls, code):
        """Decode a status letter; anything unrecognised is UNKNOWN."""
        if not isinstance(code, str) or len(code) != 1:
            return cls.UNKNOWN
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN


STATUS_DESCRIPTIONS = {
    PrinterStatus.PRINTING: "Printing",
    PrinterStatus.FLASHING_FIRMWARE: "Flashing Firmware",
    PrinterStatus.HALTED: "Halted",
    PrinterStatus.PAUSING: "Pausing",
    PrinterStatus.PAUSED: "Paused",
    PrinterStatus.RESUMING: "Resuming",
    PrinterStatus.SIMULATING: "Simulating",
    PrinterStatus.BUSY: "Busy",
    PrinterStatus.CHANGING_TOOL: "Changing Tool",
    PrinterStatus.IDLE: "Idle",
    PrinterStatus.UNKNOWN: "Unknown",
    PrinterStatus.QUERY_FAILED: "Query Failed",
}

# Actions run when the status changes between two polls
FETCH_JOB_NAME = "fetch_job_name"
ASSEMBLE_VIDEO = "assemble_video"

# (previous, current, actions); None matches any previous status
TRANSITIONS = [
    (None, PrinterStatus.PRINTING, (FETCH_JOB_NAME,)),
    (PrinterStatus.PRINTING, PrinterStatus.IDLE, (ASSEMBLE_VIDEO,)),
]


PollSample = namedtuple("PollSample", ["status", "z_height", "timestamp", "code"])


class LoopState:
    """Mutable state carried from one poll to the next."""

    def __init__(self):
        self.previous_status = PrinterStatus.UNKNOWN
        self.current_status = PrinterStatus.UNKNOWN
        # Z of the last snapshot taken
        self.previous_layer_height = None
        self.current_layer_height = None
        self.job_name = None


def current_timestamp():
    """Sortable wall-clock timestamp with one-second resolution."""
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def parse_status(payload, timestamp):
    """
    Decode an rr_status response into a PollSample.

    Args:
        payload (dict): JSON body of rr_status?type=2, or None if the query failed
        timestamp (str): Timestamp of the poll

    Returns:
        PollSample: Decoded sample; never raises
    """
    if not isinstance(payload, dict) or not payload:
        return PollSample(PrinterStatus.QUERY_FAILED, None, timestamp, None)

    code = payload.get("status")
    status = PrinterStatus.from_code(code)

    z_height = None
    coords = payload.get("coords")
    xyz = coords.get("xyz") if isinstance(coords, dict) else None
    if isinstance(xyz, list) and xyz:
        try:
            z_height = float(xyz[-1])
        except (TypeError, ValueError):
            z_height = None

    return PollSample(status, z_height, timestamp, code)


def describe_status(sample):
    """Human-readable description of a sample's status."""
    description = STATUS_DESCRIPTIONS[sample.status]
    if sample.status is PrinterStatus.UNKNOWN and sample.code:
        description = f"{description} ({sample.code})"
    return description


def plan_actions(previous, current):
    """
    Return the actions a status change calls for.

    Unchanged status and failed queries never call for anything.
    """
    if current == previous or current is PrinterStatus.QUERY_FAILED:
        return []

    actions = []
    for from_status, to_status, transition_actions in TRANSITIONS:
        if to_status is not current:
            continue
        if from_status is not None and from_status is not previous:
            continue
        actions.extend(transition_actions)
    return actions


class DuetTimelapse:
    """Main class for monitoring a Duet printer and creating timelapses."""

    def __init__(self):
        """Initialize the timelapse monitor from the configuration file."""
        self.config_path = self._load_config_file()

        # Printer and camera endpoints
        self.printer_url = os.getenv("PRINTER", "").strip()
        self.mjpeg_source = os.getenv("MJPEG_SOURCE", "").strip()

        # Storage configuration
        snapshot_dir = os.getenv("SNAPSHOT_DIRECTORY", "snapshots").strip()
        if not snapshot_dir:
            raise ValueError("SNAPSHOT_DIRECTORY cannot be empty")
        self.snapshot_dir = Path(snapshot_dir).expanduser()

        output_dir = os.getenv("VIDEO_OUTPUT_DIRECTORY", "").strip()
        self.video_output_dir = (
            Path(output_dir).expanduser() if output_dir else self.snapshot_dir
        )

        # Snapshot policy
        self.take_snapshots = duet_lib.parse_bool(
            os.getenv("TAKE_SNAPSHOTS"), default=True, name="TAKE_SNAPSHOTS"
        )
        self.layer_change = duet_lib.parse_bool(
            os.getenv("LAYER_CHANGE"), default=False, name="LAYER_CHANGE"
        )

        # Camera rotation (0, 90, 180, 270 degrees)
        rotation_str = os.getenv("CAMERA_ROTATION", "0").strip()
        self.camera_rotation = duet_lib.validate_rotation(rotation_str)

        # Polling configuration
        self.query_interval = self._get_number("QUERY_INTERVAL", "10")
        self.request_timeout = self._get_number("REQUEST_TIMEOUT", "10")

        # Video encoding configuration (seconds each still stays on screen)
        self.video_framerate = self._get_number("VIDEO_FRAMERATE", "0.1")
        # CRF value (lower = better quality)
        self.video_quality = int(self._get_number("VIDEO_QUALITY", "23"))
        self.encoder_timeout = self._get_number("ENCODER_TIMEOUT", "600")

        self.connection_errors = 0  # Track consecutive connection errors

        self._validate_config()

    def _load_config_file(self):
        """Locate and load the configuration file; its absence is fatal."""
        config_path = os.getenv("TIMELAPSE_CONFIG") or find_dotenv(usecwd=True)
        if not config_path or not os.path.isfile(config_path):
            raise ValueError(
                "Configuration file not found (set TIMELAPSE_CONFIG or create a .env file)"
            )

        load_dotenv(config_path)
        logger.info(f"Loaded configuration from {config_path}")
        return config_path

    def _get_number(self, name, default):
        value = os.getenv(name, default).strip() or default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"{name} must be a number, got '{value}'")

    def _validate_config(self):
        """Validate that required configuration is present."""
        required_vars = {
            "PRINTER": self.printer_url,
            "MJPEG_SOURCE": self.mjpeg_source,
        }

        missing = [key for key, value in required_vars.items() if not value]
        if missing:
            raise ValueError(
                f"Missing required configuration values: {', '.join(missing)}"
            )

        for name, value in (
            ("QUERY_INTERVAL", self.query_interval),
            ("VIDEO_FRAMERATE", self.video_framerate),
            ("REQUEST_TIMEOUT", self.request_timeout),
            ("ENCODER_TIMEOUT", self.encoder_timeout),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be greater than 0")

        if not 0 <= self.video_quality <= 51:
            raise ValueError("VIDEO_QUALITY must be between 0 and 51")

        logger.info(
            "Configuration validated successfully (snapshots {}, layer change {})".format(
                "enabled" if self.take_snapshots else "disabled",
                "on" if self.layer_change else "off",
            )
        )

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def check_dependencies(self):
        """Fail fast if an external tool the watcher relies on is missing."""
        if not duet_lib.check_command("ffmpeg", "FFmpeg"):
            raise StartupError("Required tool 'ffmpeg' is not installed or not callable")

    def probe_camera(self):
        """Make sure the MJPEG source answers before anything else happens."""
        if not duet_lib.probe_mjpeg_source(
            self.mjpeg_source, timeout=self.request_timeout
        ):
            raise StartupError(f"MJPEG source {self.mjpeg_source} is not reachable")

    def prepare_directories(self):
        """Create the snapshot and video directories if they are missing."""
        for directory in {self.snapshot_dir, self.video_output_dir}:
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StartupError(f"Cannot create directory {directory}: {e}")

    def initial_state(self):
        """
        Seed the loop state from one status query.

        When the watcher is attached to a print that is already running, the
        job name and current Z are picked up so the first poll is not
        mistaken for a print start.
        """
        state = LoopState()
        sample = self.poll()
        state.previous_status = sample.status
        state.current_status = sample.status

        if sample.status is PrinterStatus.PRINTING:
            state.job_name = self.fetch_job_name()
            state.previous_layer_height = sample.z_height
            state.current_layer_height = sample.z_height
            logger.info(
                f"Attached to running print '{state.job_name}' at Z={sample.z_height}"
            )

        return state

    def startup(self):
        """
        Run every pre-loop check and return the initial loop state.

        Raises:
            StartupError: If the loop must not be entered
        """
        self.check_dependencies()
        self.probe_camera()
        self.prepare_directories()
        return self.initial_state()

    # ------------------------------------------------------------------
    # Printer queries
    # ------------------------------------------------------------------

    def get_printer_status(self):
        """
        Query the printer for its status.

        Returns:
            dict: rr_status payload, or None if the query failed
        """
        status = duet_lib.get_printer_status(
            self.printer_url, timeout=self.request_timeout
        )

        if status:
            # Reset error counter on success
            if self.connection_errors > 0:
                logger.info("Printer connection restored")
                self.connection_errors = 0
        else:
            self.connection_errors += 1
            # Only log first few errors to avoid log spam
            if self.connection_errors <= 3:
                logger.debug(
                    f"Printer connection issue (#{self.connection_errors}) - will retry"
                )
            elif self.connection_errors == 4:
                logger.warning(
                    "Printer connection unstable - will continue retrying silently"
                )

        return status

    def poll(self):
        """Take one timestamped status sample."""
        timestamp = current_timestamp()
        return parse_status(self.get_printer_status(), timestamp)

    def fetch_job_name(self):
        """
        Fetch the basename of the file being printed.

        Returns:
            str: Job basename, or None if the printer did not report one
        """
        file_info = duet_lib.get_file_info(
            self.printer_url, timeout=self.request_timeout
        )
        if not file_info:
            logger.warning("Could not fetch file info for the current print")
            return None

        name = duet_lib.job_base_name(file_info.get("fileName"))
        logger.info(f"Current print: {name}")
        return name

    # ------------------------------------------------------------------
    # Snapshots and video
    # ------------------------------------------------------------------

    def should_snapshot(self, state):
        """Decide whether this poll gets a frame."""
        if not self.take_snapshots:
            return False
        if state.current_status is not PrinterStatus.PRINTING:
            return False
        if not self.layer_change:
            return True
        return (
            state.current_layer_height is not None
            and state.current_layer_height != state.previous_layer_height
        )

    def take_snapshot(self, state, timestamp):
        """
        Save one frame named after the job and the poll timestamp.

        Returns:
            bool: True if the frame was written
        """
        job_name = state.job_name or UNKNOWN_JOB_NAME
        frame_path = self.snapshot_dir / f"{job_name}-{timestamp}{duet_lib.SNAPSHOT_EXTENSION}"

        if duet_lib.capture_snapshot(
            self.mjpeg_source,
            frame_path,
            rotation=self.camera_rotation,
            timeout=self.request_timeout,
        ):
            state.previous_layer_height = state.current_layer_height
            return True
        return False

    def finish_print(self, state):
        """
        Turn the captured frames into <job>.mp4 and discard them.

        Frames are only deleted once ffmpeg has produced the video; on an
        encoding failure they stay in the snapshot directory.

        Returns:
            bool: True if a video was created
        """
        frames = duet_lib.list_frames(self.snapshot_dir)
        if not frames:
            logger.warning("Print ended but no snapshots were captured")
            return False

        job_name = state.job_name or UNKNOWN_JOB_NAME
        video_path = self.video_output_dir / f"{job_name}.mp4"

        logger.info(f"Print '{job_name}' completed")
        logger.info(f"Creating timelapse video from {len(frames)} snapshots: {video_path}")

        try:
            duet_lib.create_video(
                frames,
                video_path,
                self.video_framerate,
                quality=self.video_quality,
                timeout=self.encoder_timeout,
            )
        except duet_lib.EncodingError as e:
            logger.error(
                f"Failed to create video, keeping {len(frames)} snapshots "
                f"in {self.snapshot_dir}: {e}"
            )
            return False

        removed = duet_lib.delete_frames(frames)
        logger.info(f"Cleaned up {removed} snapshot files")
        return True

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def tick(self, state):
        """
        Run one polling iteration against state.

        Returns:
            PollSample: The sample taken this iteration
        """
        sample = self.poll()
        state.current_status = sample.status
        if sample.status is not PrinterStatus.QUERY_FAILED:
            state.current_layer_height = sample.z_height

        if sample.z_height is not None:
            logger.info(f"Printer status: {describe_status(sample)} (Z={sample.z_height})")
        else:
            logger.info(f"Printer status: {describe_status(sample)}")

        for action in plan_actions(state.previous_status, sample.status):
            if action == FETCH_JOB_NAME:
                state.job_name = self.fetch_job_name()
            elif action == ASSEMBLE_VIDEO:
                self.finish_print(state)

        if self.should_snapshot(state):
            self.take_snapshot(state, sample.timestamp)

        # A failed query keeps the last known status so it cannot fake a transition
        if sample.status is not PrinterStatus.QUERY_FAILED:
            state.previous_status = sample.status

        return sample

    def run(self):
        """Main monitoring loop."""
        logger.info("Starting Timelapse for Duet...")
        logger.info(f"Printer: {self.printer_url}")
        logger.info(f"MJPEG source: {self.mjpeg_source}")
        logger.info(f"Snapshot directory: {self.snapshot_dir}")
        logger.info(f"Query interval: {self.query_interval:g}s")

        state = self.startup()

        try:
            while True:
                self.tick(state)

                # Wait before next poll
                time.sleep(self.query_interval)

        except KeyboardInterrupt:
            logger.info("Shutting down...")
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            sys.exit(1)


def main():
    """Entry point for the script."""
    try:
        monitor = DuetTimelapse()
        monitor.run()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except StartupError as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
