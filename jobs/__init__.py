"""
Scheduled settlement and maintenance jobs over the ledger.
"""

from jobs.base import Job, JobReport
from jobs.daily_settle import DailySettleJob
from jobs.expiry import ExpiryJob
from jobs.funding import FundingJob
from jobs.metrics_rollup import MetricsRollupJob
from jobs.oracle import OracleJob
