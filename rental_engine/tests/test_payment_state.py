import os
import sys
import unittest
from pathlib import Path


os.environ.setdefault("RENTAL_ENGINE_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.rental_models import Booking
from services.errors import InvalidDownPayment, InvalidStatus
from services.payment_service import (
    apply_grand_total,
    infer_status,
    normalize_status,
    on_down_payment_edited,
    payment_summary,
    revalidate_payment,
    set_status,
)
from services.policy import BookingPolicy, load_booking_policy


def _booking(grand_total=160000, down_payment=0, status="pending"):
    booking = Booking(BookingID=1, Status=status, DownPayment=down_payment)
    apply_grand_total(booking, grand_total, BookingPolicy())
    return booking


class DownPaymentTests(unittest.TestCase):
    def setUp(self):
        self.policy = BookingPolicy()

    def test_floor_is_half_of_grand_total(self):
        booking = _booking()
        with self.assertRaises(InvalidDownPayment) as ctx:
            on_down_payment_edited(booking, 79999, self.policy)
        self.assertEqual(ctx.exception.minimum, 80000)
        self.assertEqual(ctx.exception.maximum, 160000)
        self.assertEqual(booking.DownPayment, 0)

        state = on_down_payment_edited(booking, 80000, self.policy)
        self.assertEqual(state.status, "pending")
        self.assertEqual(state.remaining_payment, 80000)

    def test_full_payment_marks_paid_and_zero_cancels(self):
        booking = _booking()
        self.assertEqual(on_down_payment_edited(booking, 160000, self.policy).status, "paid")
        self.assertEqual(booking.RemainingPayment, 0)
        self.assertEqual(on_down_payment_edited(booking, 0, self.policy).status, "cancelled")
        self.assertEqual(booking.RemainingPayment, 160000)

    def test_negative_and_excess_amounts_are_rejected(self):
        booking = _booking()
        with self.assertRaises(InvalidDownPayment):
            on_down_payment_edited(booking, -5, self.policy)
        with self.assertRaises(InvalidDownPayment):
            on_down_payment_edited(booking, 160001, self.policy)

    def test_rented_booking_keeps_status_when_fully_paid(self):
        booking = _booking(down_payment=160000, status="rented")
        self.assertEqual(on_down_payment_edited(booking, 160000, self.policy).status, "rented")

    def test_custom_floor_percentage(self):
        policy = BookingPolicy(min_down_payment_percent=30)
        booking = _booking()
        self.assertEqual(on_down_payment_edited(booking, 48000, policy).status, "pending")


class StatusTests(unittest.TestCase):
    def setUp(self):
        self.policy = BookingPolicy()

    def test_cancellation_fee_is_stable_across_status_changes(self):
        booking = _booking()
        on_down_payment_edited(booking, 80000, self.policy)
        self.assertEqual(booking.CancellationFee, 80000)

        set_status(booking, "cancelled", self.policy)
        self.assertEqual(booking.CancellationFee, 80000)
        self.assertEqual(booking.DownPayment, 80000)

        state = set_status(booking, "pending", self.policy)
        self.assertEqual(state.status, "pending")
        self.assertEqual(state.cancellation_fee, 80000)

    def test_settled_statuses_force_full_payment(self):
        for status in ("paid", "rented", "finished"):
            booking = _booking(down_payment=80000)
            state = set_status(booking, status, self.policy)
            self.assertEqual(state.status, status)
            self.assertEqual(state.down_payment, 160000)
            self.assertEqual(state.remaining_payment, 0)

    def test_pending_requires_the_floor(self):
        booking = _booking(down_payment=0, status="cancelled")
        with self.assertRaises(InvalidDownPayment):
            set_status(booking, "pending", self.policy)
        self.assertEqual(booking.Status, "cancelled")

    def test_status_names_are_normalized(self):
        self.assertEqual(normalize_status(" PAID "), "paid")
        with self.assertRaises(InvalidStatus):
            normalize_status("lost")

    def test_inference_table(self):
        cases = [
            (0, "pending", "cancelled"),
            (79999, "pending", "cancelled"),
            (80000, "paid", "pending"),
            (160000, "pending", "paid"),
            (160000, "rented", "rented"),
            (160000, "finished", "finished"),
        ]
        for down_payment, current, expected in cases:
            self.assertEqual(infer_status(down_payment, 160000, current, self.policy), expected)


class RevalidationTests(unittest.TestCase):
    def setUp(self):
        self.policy = BookingPolicy()

    def test_down_payment_is_capped_when_total_drops(self):
        booking = _booking(down_payment=160000, status="rented")
        apply_grand_total(booking, 100000, self.policy)
        state = revalidate_payment(booking, self.policy)
        self.assertEqual(state.down_payment, 100000)
        self.assertEqual(state.status, "rented")
        self.assertEqual(state.cancellation_fee, 50000)

    def test_pending_booking_below_new_floor_is_cancelled(self):
        booking = _booking(down_payment=80000)
        apply_grand_total(booking, 200000, self.policy)
        self.assertEqual(revalidate_payment(booking, self.policy).status, "cancelled")

    def test_rented_booking_cancelled_by_repricing_is_logged_as_warning(self):
        booking = _booking(down_payment=80000, status="rented")
        apply_grand_total(booking, 200000, self.policy)
        with self.assertLogs("rental_engine.payment", level="WARNING") as captured:
            state = revalidate_payment(booking, self.policy)
        self.assertEqual(state.status, "cancelled")
        self.assertIn("Rented booking cancelled by repricing", captured.output[0])

    def test_paid_booking_drops_to_pending_when_total_grows(self):
        booking = _booking(down_payment=160000, status="paid")
        apply_grand_total(booking, 200000, self.policy)
        state = revalidate_payment(booking, self.policy)
        self.assertEqual(state.status, "pending")
        self.assertEqual(state.remaining_payment, 40000)

    def test_cancelled_booking_stays_cancelled(self):
        booking = _booking(down_payment=160000, status="cancelled")
        self.assertEqual(revalidate_payment(booking, self.policy).status, "cancelled")


class SummaryAndPolicyTests(unittest.TestCase):
    def test_payment_summary_reports_partial_state(self):
        booking = _booking(down_payment=80000)
        summary = payment_summary(booking, BookingPolicy())
        self.assertEqual(summary["state"], "partial")
        self.assertEqual(summary["minDownPayment"], 80000)
        self.assertEqual(summary["percentagePaid"], 50.0)

    def test_policy_reads_environment(self):
        policy = load_booking_policy({"BOOKING_MIN_DOWN_PAYMENT_PERCENT": "30", "BOOKING_ALLOCATION_RETRIES": "0"})
        self.assertEqual(policy.min_down_payment_percent, 30)
        self.assertEqual(policy.cancellation_fee_percent, 50)
        self.assertEqual(policy.allocation_retries, 0)
        with self.assertRaises(RuntimeError):
            load_booking_policy({"BOOKING_MIN_DOWN_PAYMENT_PERCENT": "abc"})
        with self.assertRaises(RuntimeError):
            load_booking_policy({"BOOKING_CANCELLATION_FEE_PERCENT": "150"})


if __name__ == "__main__":
    unittest.main()
