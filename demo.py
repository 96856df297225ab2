#!/usr/bin/env python3
"""
Refraction Screening Demo Script

Runs a complete test for one eye against a simulated subject, with the
face tracker replaced by a noisy face-width model.

Usage:
    python demo.py [options]

Examples:
    python demo.py
    python demo.py --eye left --myopia -3.5
    python demo.py --seed 7 --json
"""

from __future__ import annotations

import argparse
import math
import random
import sys

from refraction_engine.config import load_config_from_env, log_level_from_env
from refraction_engine.core import EyeTestSession, FaceObservation, Phase
from refraction_engine.logging_setup import configure_logging
from refraction_engine.quality import ReasonablenessPolicy

FRAME_INTERVAL_MS = 50.0  # 20 Hz tracker


class ManualClock:
    """Millisecond clock advanced by the simulation."""

    def __init__(self, start_ms: float = 0.0):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class SimulatedSubject:
    """
    A myopic subject in front of the camera.

    Face width follows the proportional model with a little tracker noise;
    acuity answers follow a psychometric curve around the subject's true
    logMAR (4-alternative, so guessing is right 25% of the time).
    """

    def __init__(
        self,
        myopia_d: float,
        rng: random.Random,
        width_at_40cm_px: float = 300.0,
        width_noise: float = 0.004,
        lca_d: float = 0.70
    ):
        self.myopia_d = myopia_d
        self.rng = rng
        self.k = 40.0 * width_at_40cm_px
        self.width_noise = width_noise
        self.true_logmar = min(1.0, max(-0.1, ReasonablenessPolicy().predict_logmar(myopia_d)))

        # Blue stimulus focuses in front of white light by the LCA
        vergence = myopia_d + lca_d
        self.far_point_cm = min(100.0, -100.0 / vergence) if vergence < 0 else 100.0
        self.distance_cm = 40.0

    def observe(self) -> FaceObservation:
        width = self.k / self.distance_cm
        width *= 1.0 + self.rng.gauss(0.0, self.width_noise)
        return FaceObservation(
            face_pixel_width=width,
            yaw=self.rng.gauss(0.0, 2.0),
            pitch=self.rng.gauss(0.0, 2.0),
            roll=self.rng.gauss(0.0, 1.0),
            confidence=0.95,
        )

    def answer(self, presented_logmar: float, direction: str) -> str:
        p_seen = 1.0 / (1.0 + math.exp(-(presented_logmar - self.true_logmar) / 0.05))
        p_correct = 0.25 + 0.75 * p_seen
        if self.rng.random() < p_correct:
            return direction
        return self.rng.choice([d for d in ("up", "down", "left", "right") if d != direction])


def print_header(title: str) -> None:
    """Print formatted header."""
    line = "=" * 70
    print(f"\n{line}")
    print(f"  {title}")
    print(line)


def print_section(title: str) -> None:
    """Print formatted section header."""
    print(f"\n{'-' * 40}")
    print(f"  {title}")
    print(f"{'-' * 40}")


def feed_frames(session: EyeTestSession, subject: SimulatedSubject, clock: ManualClock, count: int) -> None:
    for _ in range(count):
        clock.advance(FRAME_INTERVAL_MS)
        session.process_frame(subject.observe())


def run_calibration(session, subject, clock, quiet: bool) -> None:
    subject.distance_cm = session.config.calibration_distance_cm
    for _ in range(10):
        feed_frames(session, subject, clock, 20)
        outcome = session.calibrate()
        if outcome.success:
            break
    else:
        raise RuntimeError(f"Calibration failed: {outcome.message}")

    if not quiet:
        print_section("CALIBRATION")
        print(f"  {outcome.message}")
        print(f"  Reference width: {outcome.reference_pixel_width:.1f} px")


def run_visual_acuity(session, subject, clock, quiet: bool) -> None:
    if not quiet:
        print_section("VISUAL ACUITY")

    while session.phase == Phase.VISUAL_ACUITY:
        feed_frames(session, subject, clock, 5)
        presentation = session.next_optotype()
        answer = subject.answer(presentation.logmar, presentation.direction)
        outcome = session.submit_response(answer)

        if not quiet:
            size = presentation.optotype.size if presentation.optotype else "-"
            mark = "✓" if outcome.correct else "✗"
            print(f"  Trial {outcome.step.trial_count:2d}: logMAR {presentation.logmar:+.1f} "
                  f"({presentation.snellen:>7}, {size} px) {mark}")

        if outcome.visual_acuity is not None and not quiet:
            va = outcome.visual_acuity
            suffix = " (fallback)" if va.threshold_fallback else ""
            print(f"\n  Result: logMAR {va.logmar:.2f} = {va.snellen}{suffix}")


def run_far_point(session, subject, clock, quiet: bool):
    if not quiet:
        print_section("FAR POINT")
        print(f"  Simulated far point: {subject.far_point_cm:.1f} cm")

    result = None
    while session.phase == Phase.FAR_POINT:
        # Subject backs off to where the symbol blurs, with a little scatter
        subject.distance_cm = subject.far_point_cm + subject.rng.gauss(0.0, 0.8)
        feed_frames(session, subject, clock, 25)
        outcome = session.record_far_point()
        if not quiet:
            print(f"  {outcome.message}")
        if outcome.result is not None:
            result = outcome.result
    return result


def print_result(session: EyeTestSession) -> None:
    summary = session.recorder.summary(session.record_id)
    print_header("RESULT")
    for key in ("eye", "visualAcuitySnellen", "spherical", "measurementCount",
                "qualityScore", "qualityGrade", "recommendation"):
        value = summary[key]
        if isinstance(value, float):
            value = f"{value:+.2f}"
        print(f"  {key:>20}: {value}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Simulated refraction screening test",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--eye", choices=("left", "right"), default="right",
                        help="Eye to test")
    parser.add_argument("--myopia", type=float, default=-2.0,
                        help="Simulated spherical error in diopters")
    parser.add_argument("--seed", type=int, default=None,
                        help="Random seed for a reproducible run")
    parser.add_argument("--json", action="store_true",
                        help="Print the full test record as JSON")

    args = parser.parse_args()

    configure_logging(log_level_from_env("WARNING"))

    rng = random.Random(args.seed)
    clock = ManualClock()
    config = load_config_from_env()
    session = EyeTestSession(config=config, clock=clock, rng=rng)
    subject = SimulatedSubject(args.myopia, rng, lca_d=session.refraction.lca)

    quiet = args.json
    if not quiet:
        print_header("REFRACTION SCREENING DEMO")
        print(f"  Eye: {args.eye}")
        print(f"  Simulated error: {args.myopia:+.2f} D")

    session.start_eye(args.eye)
    run_calibration(session, subject, clock, quiet)
    run_visual_acuity(session, subject, clock, quiet)
    run_far_point(session, subject, clock, quiet)

    if args.json:
        print(session.recorder.export(session.record_id))
    else:
        print_result(session)
        print("\n✓ Done!")


if __name__ == "__main__":
    try:
        main()
    except RuntimeError as e:
        print(f"Error: {e}")
        sys.exit(1)
