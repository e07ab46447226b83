from datetime import date, datetime

from extensions import db


class ExchangeRate(db.Model):
    __tablename__ = 'exchange_rates'

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(50), nullable=False, default='manual')
    base_currency = db.Column(db.String(3), nullable=False, default='USD')
    quote_currency = db.Column(db.String(3), nullable=False)
    value = db.Column('rate', db.Numeric(18, 6), nullable=False)
    as_of_date = db.Column(db.Date, nullable=False, default=date.today)
    fetched_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    notes = db.Column(db.String(255))

    __table_args__ = (
        db.UniqueConstraint('provider', 'base_currency', 'quote_currency', 'as_of_date', name='uq_exchange_rate_daily'),
    )

    def __repr__(self):
        return (
            f"<ExchangeRate {self.provider} {self.base_currency}/{self.quote_currency} "
            f"{self.value} ({self.as_of_date})>"
        )
