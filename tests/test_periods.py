import datetime
import unittest

from clearledger.periods import (
    advance_date,
    days_until,
    monthly_schedule,
    months_between,
    percent_change,
    previous_period,
    resolve_period,
    to_date_str,
    trend_direction,
)


class ResolvePeriodTests(unittest.TestCase):

    def test_month_starts_on_the_first(self):
        self.assertEqual(resolve_period('month', '2025-03-18'), ('2025-03-01', '2025-03-18'))

    def test_today_is_a_single_day(self):
        self.assertEqual(resolve_period('today', '2025-03-18'), ('2025-03-18', '2025-03-18'))

    def test_week_goes_back_seven_days(self):
        self.assertEqual(resolve_period('week', '2025-03-18'), ('2025-03-11', '2025-03-18'))

    def test_quarter_goes_back_three_months(self):
        self.assertEqual(resolve_period('quarter', '2025-05-31'), ('2025-02-28', '2025-05-31'))

    def test_year_starts_on_january_first(self):
        self.assertEqual(resolve_period('year', datetime.date(2025, 7, 4)), ('2025-01-01', '2025-07-04'))

    def test_unknown_period_falls_back_to_month(self):
        self.assertEqual(resolve_period('decade', '2025-03-18'), ('2025-03-01', '2025-03-18'))


class PreviousPeriodTests(unittest.TestCase):

    def test_month_to_date(self):
        self.assertEqual(previous_period('2025-03-01', '2025-03-18'), ('2025-02-12', '2025-02-28'))

    def test_single_day_compares_with_yesterday(self):
        self.assertEqual(previous_period('2025-03-18', '2025-03-18'), ('2025-03-17', '2025-03-17'))


class ChangeTests(unittest.TestCase):

    def test_percent_change_rounds_half_up(self):
        self.assertEqual(percent_change(150, 100), 50)
        self.assertEqual(percent_change(125, 200), -37)
        self.assertEqual(percent_change(50, 100), -50)

    def test_percent_change_without_previous_is_zero(self):
        self.assertEqual(percent_change(500, 0), 0)

    def test_trend_direction(self):
        self.assertEqual(trend_direction(12), 'up')
        self.assertEqual(trend_direction(-3), 'down')
        self.assertEqual(trend_direction(0), 'stable')


class AdvanceDateTests(unittest.TestCase):

    def test_month_end_clamps(self):
        self.assertEqual(advance_date('2025-01-31', 'monthly'), '2025-02-28')
        self.assertEqual(advance_date('2024-01-31', 'monthly'), '2024-02-29')

    def test_day_based_frequencies(self):
        self.assertEqual(advance_date('2025-03-01', 'weekly'), '2025-03-08')
        self.assertEqual(advance_date('2025-03-01', 'biweekly'), '2025-03-15')

    def test_quarterly_and_yearly(self):
        self.assertEqual(advance_date('2025-11-30', 'quarterly'), '2026-02-28')
        self.assertEqual(advance_date('2024-02-29', 'yearly'), '2025-02-28')

    def test_unknown_frequency(self):
        with self.assertRaises(ValueError):
            advance_date('2025-03-01', 'daily')


class ScheduleTests(unittest.TestCase):

    def test_schedule_does_not_drift_from_month_end(self):
        self.assertEqual(
            monthly_schedule('2025-01-31', 3),
            ['2025-01-31', '2025-02-28', '2025-03-31'],
        )

    def test_offset_skips_the_anchor_month(self):
        self.assertEqual(monthly_schedule('2025-01-15', 2, offset=1), ['2025-02-15', '2025-03-15'])

    def test_distances(self):
        self.assertEqual(months_between('2025-03-18', '2025-12-01'), 9)
        self.assertEqual(months_between('2025-03-18', '2025-01-01'), -2)
        self.assertEqual(days_until('2025-03-20', '2025-03-18'), 2)
        self.assertEqual(to_date_str(datetime.datetime(2025, 3, 18, 10, 30)), '2025-03-18')


if __name__ == '__main__':
    unittest.main()
