from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Boolean, ForeignKey, Index,
    DateTime, text,
)
from sqlalchemy.orm import relationship
from db.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    display_name = Column(Text, nullable=False)
    timezone = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    meal_plans = relationship("MealPlan", back_populates="user", cascade="all, delete-orphan")
    progress_days = relationship("DailyProgress", back_populates="user", cascade="all, delete-orphan")
    achievements = relationship("UserAchievement", back_populates="user", cascade="all, delete-orphan")
    resolution_cursor = relationship(
        "PlanResolutionCursor",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )


class MealPlan(Base):
    __tablename__ = "meal_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(Text, nullable=False)
    description = Column(Text)
    category = Column(Text)
    tags = Column(Text)  # JSON array
    status = Column(Text, nullable=False, default="active")  # active | archived
    is_favorite = Column(Boolean, nullable=False, default=False)
    is_current = Column(Boolean, nullable=False, default=False)
    start_date = Column(Text)  # YYYY-MM-DD
    end_date = Column(Text)  # YYYY-MM-DD, inclusive
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="meal_plans")
    recipes = relationship(
        "MealPlanRecipe",
        back_populates="meal_plan",
        cascade="all, delete-orphan",
        order_by="MealPlanRecipe.day_index, MealPlanRecipe.id",
    )


class MealPlanRecipe(Base):
    """One recipe slot: a recipe placed on the Nth day of a plan for a meal type."""

    __tablename__ = "meal_plan_recipes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    meal_plan_id = Column(Integer, ForeignKey("meal_plans.id", ondelete="CASCADE"), nullable=False)
    recipe_id = Column(Text, nullable=False)
    recipe_data = Column(Text)  # JSON object from the recipe API
    day_index = Column(Integer, nullable=False, default=0)
    meal_type = Column(Text, nullable=False)
    notes = Column(Text)
    is_cooked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    meal_plan = relationship("MealPlan", back_populates="recipes")


class DailyProgress(Base):
    __tablename__ = "user_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    date = Column(Text, nullable=False)  # YYYY-MM-DD
    meal_plan_id = Column(Integer, ForeignKey("meal_plans.id", ondelete="SET NULL"))
    breakfast_completed = Column(Boolean, nullable=False, default=False)
    lunch_completed = Column(Boolean, nullable=False, default=False)
    dinner_completed = Column(Boolean, nullable=False, default=False)
    snack_completed = Column(Boolean, nullable=False, default=False)
    shopping_completed = Column(Boolean, nullable=False, default=False)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="progress_days")


class AchievementType(Base):
    __tablename__ = "achievement_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, unique=True, nullable=False)
    description = Column(Text, nullable=False)
    category = Column(Text, nullable=False)  # planning | cooking | consistency | shopping
    icon = Column(Text)
    points = Column(Integer, nullable=False, default=0)
    requirements = Column(Text, nullable=False)  # JSON object, counter name -> target
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UserAchievement(Base):
    __tablename__ = "user_achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    achievement_type_id = Column(Integer, ForeignKey("achievement_types.id"), nullable=False)
    progress = Column(Text)  # JSON object, counter name -> value
    completed = Column(Boolean, nullable=False, default=False)
    achieved_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="achievements")
    achievement_type = relationship("AchievementType")


class PlanResolutionCursor(Base):
    """Last calendar day the current-plan resolution ran for a user."""

    __tablename__ = "plan_resolution_cursors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    last_checked_date = Column(Text)  # YYYY-MM-DD
    last_plan_id = Column(Integer)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="resolution_cursor")


# Indexes
Index("idx_meal_plans_user_status", MealPlan.user_id, MealPlan.status, MealPlan.start_date)
Index("idx_meal_plans_user_end", MealPlan.user_id, MealPlan.end_date)
Index(
    "idx_meal_plans_one_current",
    MealPlan.user_id,
    unique=True,
    sqlite_where=text("is_current = 1 AND status = 'active'"),
    postgresql_where=text("is_current AND status = 'active'"),
)
Index("idx_meal_plan_recipes_plan_day", MealPlanRecipe.meal_plan_id, MealPlanRecipe.day_index)
Index("idx_user_progress_user_date", DailyProgress.user_id, DailyProgress.date, unique=True)
Index(
    "idx_user_achievements_user_type",
    UserAchievement.user_id,
    UserAchievement.achievement_type_id,
    unique=True,
)
