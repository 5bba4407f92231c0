# Import all models so SQLAlchemy metadata is fully populated on startup.
from surveylinks.db.models.project import Project, ProjectStatus
from surveylinks.db.models.vendor import Vendor, ProjectVendor
from surveylinks.db.models.question import Question, QuestionType
from surveylinks.db.models.survey_link import SurveyLink, LinkType, LinkStatus
from surveylinks.db.models.flag import Flag, FlagSeverity


__all__ = [
    "Project",
    "ProjectStatus",
    "Vendor",
    "ProjectVendor",
    "Question",
    "QuestionType",
    "SurveyLink",
    "LinkType",
    "LinkStatus",
    "Flag",
    "FlagSeverity",
]
