"""
Unit tests for schedule resolution (bacup/schedule.py).

Tests the daily, weekly, monthly and cron grammars of next_fire_time.
"""

from datetime import datetime, timedelta, timezone

import pytest

from bacup.schedule import InvalidSchedule, Schedule, ScheduleError, next_fire_time


UTC = timezone.utc

REFERENCES = [
    datetime(2024, 3, 5, 0, 30, tzinfo=UTC),
    datetime(2024, 3, 5, 1, 0, tzinfo=UTC),
    datetime(2024, 3, 5, 1, 0, 1, tzinfo=UTC),
    datetime(2024, 3, 5, 23, 59, 59, tzinfo=UTC),
    datetime(2024, 2, 29, 12, 0, tzinfo=UTC),
    datetime(2024, 12, 31, 23, 59, tzinfo=UTC),
]


class TestDailySchedule:
    """Test the `daily HH:MM` grammar."""

    @pytest.mark.parametrize('reference', REFERENCES)
    @pytest.mark.parametrize('descriptor,hour,minute', [
        ('daily 01:00', 1, 0),
        ('daily 00:00', 0, 0),
        ('daily 23:59', 23, 59),
    ])
    def test_daily_is_strictly_after_and_within_a_day(self, reference, descriptor, hour, minute):
        """Test result is after the reference, at most 24h later, at HH:MM."""
        result = next_fire_time(descriptor, reference)

        assert result > reference
        assert result - reference <= timedelta(hours=24)
        assert (result.hour, result.minute, result.second) == (hour, minute, 0)

    def test_daily_later_today(self):
        """Test a time still ahead today fires today."""
        result = next_fire_time('daily 13:30', datetime(2024, 3, 5, 9, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 5, 13, 30, tzinfo=UTC)

    def test_daily_past_time_fires_tomorrow(self):
        """Test a time already past today fires tomorrow."""
        result = next_fire_time('daily 01:00', datetime(2024, 3, 5, 1, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 6, 1, 0, tzinfo=UTC)

    def test_naive_reference_is_utc(self):
        """Test naive datetimes are interpreted as UTC."""
        result = next_fire_time('daily 02:00', datetime(2024, 3, 5, 1, 0))
        assert result == datetime(2024, 3, 5, 2, 0, tzinfo=UTC)

    def test_non_utc_reference_is_converted(self):
        """Test aware datetimes in another zone are converted first."""
        plus_two = timezone(timedelta(hours=2))
        result = next_fire_time('daily 02:00', datetime(2024, 3, 5, 3, 0, tzinfo=plus_two))
        assert result == datetime(2024, 3, 5, 2, 0, tzinfo=UTC)

    @pytest.mark.parametrize('descriptor', ['daily 24:00', 'daily 12:60', 'daily 1:00', 'daily'])
    def test_daily_invalid_time(self, descriptor):
        """Test out-of-range or unpadded times are rejected."""
        with pytest.raises(InvalidSchedule):
            Schedule.parse(descriptor)


class TestWeeklySchedule:
    """Test the `[weekly] <day> HH:MM` grammar."""

    @pytest.mark.parametrize('reference', REFERENCES)
    @pytest.mark.parametrize('descriptor,weekday', [
        ('weekly monday 01:00', 0),
        ('tue 01:00', 1),
        ('Wednesday 01:00', 2),
        ('weekly THU 01:00', 3),
        ('friday 01:00', 4),
        ('weekly sat 01:00', 5),
        ('sunday 01:00', 6),
    ])
    def test_weekly_weekday_and_distance(self, reference, descriptor, weekday):
        """Test result falls on the named day, 1 to 7 days after the reference."""
        result = next_fire_time(descriptor, reference)

        assert result.weekday() == weekday
        assert result > reference
        assert result - reference <= timedelta(days=7)
        assert (result.hour, result.minute) == (1, 0)

    def test_weekly_same_day_time_passed_advances_a_week(self):
        """Test same weekday after the time advances 7 days."""
        # 2024-03-05 is a Tuesday
        result = next_fire_time('tuesday 01:00', datetime(2024, 3, 5, 2, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 12, 1, 0, tzinfo=UTC)

    def test_weekly_same_day_time_ahead(self):
        """Test same weekday before the time fires today."""
        result = next_fire_time('tuesday 03:00', datetime(2024, 3, 5, 2, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 5, 3, 0, tzinfo=UTC)

    def test_unknown_day_name_falls_through_to_cron(self):
        """Test an unknown day name is not weekly and fails as cron."""
        with pytest.raises(InvalidSchedule):
            Schedule.parse('someday 01:00')


class TestMonthlySchedule:
    """Test the `monthly <day> HH:MM` grammar."""

    def test_monthly_31_in_30_day_month(self):
        """Test a day beyond the month's length is an error, not clamped."""
        with pytest.raises(InvalidSchedule):
            next_fire_time('monthly 31 00:00', datetime(2024, 4, 10, tzinfo=UTC))

    def test_monthly_30_in_february(self):
        with pytest.raises(InvalidSchedule):
            next_fire_time('monthly 30 00:00', datetime(2024, 2, 1, tzinfo=UTC))

    def test_monthly_later_this_month(self):
        result = next_fire_time('monthly 15 04:30', datetime(2024, 3, 5, tzinfo=UTC))
        assert result == datetime(2024, 3, 15, 4, 30, tzinfo=UTC)

    def test_monthly_passed_rolls_to_next_month(self):
        result = next_fire_time('monthly 1 00:00', datetime(2024, 12, 1, 0, 0, tzinfo=UTC))
        assert result == datetime(2025, 1, 1, 0, 0, tzinfo=UTC)

    def test_monthly_passed_skips_months_without_the_day(self):
        """Test passing Jan 31 continues to Mar 31, skipping February."""
        result = next_fire_time('monthly 31 00:00', datetime(2024, 1, 31, 12, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 31, 0, 0, tzinfo=UTC)

    @pytest.mark.parametrize('descriptor', ['monthly 0 00:00', 'monthly 32 00:00'])
    def test_monthly_day_out_of_range(self, descriptor):
        with pytest.raises(InvalidSchedule):
            Schedule.parse(descriptor)


class TestCronSchedule:
    """Test cron fallback."""

    def test_cron_expression(self):
        result = next_fire_time('30 2 * * *', datetime(2024, 3, 5, 1, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 5, 2, 30, tzinfo=UTC)

    def test_cron_strictly_after_reference(self):
        """Test a reference exactly on a cron slot returns the following slot."""
        result = next_fire_time('*/15 * * * *', datetime(2024, 3, 5, 1, 15, tzinfo=UTC))
        assert result == datetime(2024, 3, 5, 1, 30, tzinfo=UTC)

    @pytest.mark.parametrize('descriptor', ['0 3 * * 0', '0 3 * * 7', '0 3 * * sun'])
    def test_cron_sunday(self, descriptor):
        """Test 0 and 7 both mean Sunday in the day-of-week field."""
        result = next_fire_time(descriptor, datetime(2024, 3, 5, 1, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 10, 3, 0, tzinfo=UTC)

    def test_cron_weekday_number(self):
        # 2024-03-05 is a Tuesday; 1 is Monday
        result = next_fire_time('0 3 * * 1', datetime(2024, 3, 5, 1, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 11, 3, 0, tzinfo=UTC)

    def test_cron_weekday_range_from_sunday(self):
        """Test 0-2 covers Sunday through Tuesday."""
        result = next_fire_time('0 3 * * 0-2', datetime(2024, 3, 5, 4, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 10, 3, 0, tzinfo=UTC)

    def test_cron_weekday_list_and_step(self):
        schedule = Schedule.parse('0 3 * * 5,*/3')
        # */3 is Sunday, Wednesday and Saturday, plus Friday
        result = schedule.next_fire_time(datetime(2024, 3, 6, 4, 0, tzinfo=UTC))
        assert result == datetime(2024, 3, 8, 3, 0, tzinfo=UTC)

    def test_cron_weekday_out_of_range(self):
        with pytest.raises(InvalidSchedule):
            Schedule.parse('0 3 * * 8')

    def test_cron_kind(self):
        assert Schedule.parse('0 3 * * 1').kind == Schedule.CRON

    @pytest.mark.parametrize('descriptor', ['not a schedule', '99 * * * *', '', '   '])
    def test_invalid_descriptor(self, descriptor):
        """Test unparseable descriptors raise InvalidSchedule."""
        with pytest.raises(InvalidSchedule):
            Schedule.parse(descriptor)

    def test_invalid_schedule_is_schedule_error(self):
        assert issubclass(InvalidSchedule, ScheduleError)


class TestGrammarPrecedence:
    """Test descriptors are matched in grammar order."""

    @pytest.mark.parametrize('descriptor,kind', [
        ('daily 01:00', Schedule.DAILY),
        ('  DAILY   01:00 ', Schedule.DAILY),
        ('weekly mon 01:00', Schedule.WEEKLY),
        ('mon 01:00', Schedule.WEEKLY),
        ('monthly 5 01:00', Schedule.MONTHLY),
        ('0 1 * * *', Schedule.CRON),
    ])
    def test_kind(self, descriptor, kind):
        assert Schedule.parse(descriptor).kind == kind
