from sqlalchemy import Column, String, DateTime

from willcall.database import Base


class JobState(Base):
    """Single row per named batch job (e.g. the no-show sweep).

    ``last_run_date`` is the business-local calendar date of the last claimed
    run; it is what the once-per-day gate compares against.
    """

    __tablename__ = "job_states"

    name = Column(String(100), primary_key=True)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_run_date = Column(String(10), nullable=True)

    def __repr__(self):
        return f"<JobState(name='{self.name}', last_run_at={self.last_run_at})>"
