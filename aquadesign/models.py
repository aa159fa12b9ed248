from sqlalchemy import Column, String, DateTime, Text, Boolean, JSON
from datetime import datetime
from .database import Base


class DesignSession(Base):
    """Identifier bookkeeping and form state across the staged design flow."""
    __tablename__ = "design_sessions"

    id = Column(String, primary_key=True)  # UUID
    stage = Column(String, default="initial")  # Current pipeline stage
    history_json = Column(JSON, default=list)  # Visited stages, newest last
    selected_stages_json = Column(JSON, default=list)  # Selected optional stages
    update_flow = Column(Boolean, default=False)
    # JSON so integer handles come back as integers
    design_handle = Column(JSON, nullable=True)
    project_handle = Column(JSON, nullable=True)
    forms_json = Column(JSON, default=dict)  # {stage_id: {field: value}}
    recommended_species = Column(String, nullable=True)
    last_commit_error = Column(Text, nullable=True)
    commit_results_json = Column(JSON, default=dict)  # {stage_id: {action, results}}
    report_json = Column(JSON, default=dict)  # {section: results} fetched on entering the report
    report_errors_json = Column(JSON, default=dict)  # {section: message} for sections that failed
    status = Column(String, default="active")  # 'active' | 'complete'
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
