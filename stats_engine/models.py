# stats_engine/models.py
from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


class Experiment(Base):
    __tablename__ = "experiments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    hypothesis = Column(Text, nullable=True)
    analysis_mode = Column(String, nullable=False)  # bayesian | sequential | bandit | frequentist
    bandit_algorithm = Column(String, nullable=True)
    power_analysis_id = Column(Integer, ForeignKey("power_analyses.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # One-to-many: Experiment → Variants
    variants = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.name",
    )
    sequential_plan = relationship(
        "SequentialPlan",
        uselist=False,
        cascade="all, delete-orphan",
    )
    power_analysis = relationship("PowerAnalysis", foreign_keys=[power_analysis_id])


class Variant(Base):
    __tablename__ = "variants"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False)

    name = Column(String, nullable=False)  # e.g. "A", "B"
    assignments = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    # Filled by a frequentist analysis
    conversion_rate = Column(Float, nullable=True)
    uplift = Column(Float, nullable=True)   # None for the control variant
    p_value = Column(Float, nullable=True)  # None for the control variant

    experiment = relationship("Experiment", back_populates="variants")


class BayesianStats(Base):
    __tablename__ = "bayesian_stats"
    __table_args__ = (UniqueConstraint("experiment_id", "variant_id"),)

    id = Column(Integer, primary_key=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("variants.id"), nullable=False)

    alpha_prior = Column(Float, nullable=False)
    beta_prior = Column(Float, nullable=False)
    alpha_posterior = Column(Float, nullable=False)
    beta_posterior = Column(Float, nullable=False)
    probability_best = Column(Float, nullable=True)
    credible_interval_lower = Column(Float, nullable=True)
    credible_interval_upper = Column(Float, nullable=True)
    expected_loss = Column(Float, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    variant = relationship("Variant")


class BanditState(Base):
    __tablename__ = "bandit_state"
    __table_args__ = (UniqueConstraint("experiment_id", "variant_id"),)

    id = Column(Integer, primary_key=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("variants.id"), nullable=False)

    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    pulls = Column(Integer, nullable=False, default=0)
    cumulative_reward = Column(Float, nullable=False, default=0.0)
    mean_reward = Column(Float, nullable=False, default=0.0)
    current_allocation = Column(Float, nullable=False)
    initial_allocation = Column(Float, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    variant = relationship("Variant")


class BanditRegret(Base):
    __tablename__ = "bandit_regret"
    # one snapshot per pull count keeps replays idempotent
    __table_args__ = (UniqueConstraint("experiment_id", "total_pulls"),)

    id = Column(Integer, primary_key=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False, index=True)
    total_pulls = Column(Integer, nullable=False)
    cumulative_regret = Column(Float, nullable=False)
    optimal_variant_id = Column(Integer, ForeignKey("variants.id"), nullable=True)
    recorded_at = Column(DateTime, default=datetime.utcnow)


class SequentialPlan(Base):
    __tablename__ = "sequential_plans"

    id = Column(Integer, primary_key=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False, unique=True)
    planned_sample_size = Column(Integer, nullable=False)  # per variant
    num_checks = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class SequentialAnalysis(Base):
    __tablename__ = "sequential_analyses"
    __table_args__ = (UniqueConstraint("experiment_id", "check_number"),)

    id = Column(Integer, primary_key=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False, index=True)
    check_number = Column(Integer, nullable=False)
    total_checks = Column(Integer, nullable=False)
    total_assignments = Column(Integer, nullable=False)
    information_fraction = Column(Float, nullable=False)
    alpha_spent = Column(Float, nullable=False)
    z_statistic = Column(Float, nullable=False)
    boundary_upper = Column(Float, nullable=False)
    boundary_lower = Column(Float, nullable=False)
    decision = Column(String, nullable=False)
    decision_reason = Column(Text, nullable=True)
    checked_at = Column(DateTime, default=datetime.utcnow)


class PowerAnalysis(Base):
    __tablename__ = "power_analyses"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, nullable=True)
    baseline_rate = Column(Float, nullable=False)
    minimum_detectable_effect = Column(Float, nullable=False)
    desired_power = Column(Float, nullable=False)
    significance_level = Column(Float, nullable=False)
    required_sample_size = Column(Integer, nullable=False)  # per variant
    variant_count = Column(Integer, nullable=False, default=2)
    total_sample_size = Column(Integer, nullable=False)
    daily_volume = Column(Integer, nullable=True)
    estimated_duration_days = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
