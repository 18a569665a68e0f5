"""Map flattened ATOM entries onto canonical entity records.

SSRS reports expose the same business field under many column names
depending on how the report was authored (``Name1``, ``Project_Name``,
``ProjectName``...), so every field is resolved through a fallback chain
of candidate keys.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from feedsync.models.enums import EntityType

logger = logging.getLogger(__name__)

# Used to estimate hours from cost when a report has no hours columns
FALLBACK_HOURLY_RATE = 125.0

INACTIVE_STATUS_KEYWORDS = ("completed", "cancelled", "closed")

_ENTITY_REPLACEMENTS = [
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
]

_CURRENCY_PATTERN = re.compile(r"[$,€£]")
_NUMBER_PREFIX = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_FALLBACK_ID_UNSAFE = re.compile(r"[^a-zA-Z0-9_]")


@dataclass
class CanonicalRecord:
    """Typed summary of one feed entry, ready for reconciliation."""

    entity_type: EntityType
    external_id: str
    fields: Dict[str, Any]
    raw_data: Dict[str, str] = field(default_factory=dict)


def clean_html_entities(value: Optional[str]) -> str:
    """Decode the HTML entities SSRS leaves in text values and trim."""
    if not value:
        return ""
    for entity, char in _ENTITY_REPLACEMENTS:
        value = value.replace(entity, char)
    return value.strip()


def parse_number(value: Optional[str]) -> Optional[float]:
    """Parse a report number, ignoring currency symbols and thousands separators.

    Like a lenient float parse, trailing text after the leading number is
    ignored (``"12.5 hrs"`` -> 12.5). Returns None when nothing numeric is found.
    """
    if value is None or value == "":
        return None
    cleaned = _CURRENCY_PATTERN.sub("", str(value)).strip()
    match = _NUMBER_PREFIX.match(cleaned)
    if not match:
        return None
    return float(match.group(0))


def first_value(entry: Dict[str, str], keys: Iterable[str]) -> str:
    """Return the first non-empty value among candidate keys."""
    for key in keys:
        value = entry.get(key)
        if value:
            return value
    return ""


def _first_single_value(entry: Dict[str, str], keys: Iterable[str], require_content: bool = True) -> str:
    # List columns (e.g. every employee in the report) are joined with commas
    for key in keys:
        candidate = entry.get(key)
        if not candidate:
            continue
        cleaned = clean_html_entities(candidate)
        if "," in cleaned or len(cleaned) >= 100:
            continue
        if require_content and not cleaned:
            continue
        return cleaned
    return ""


def _or_none(value):
    return value if value else None


def map_project_entry(entry: Dict[str, str]) -> CanonicalRecord:
    """Map a Project Manager Summary entry to a PROJECT record."""
    external_id = first_value(entry, ("ID", "ProjectID", "Project_ID", "Id")).strip()
    project_name = clean_html_entities(first_value(entry, ("Name1", "ProjectName", "Project_Name", "Name")))
    client_name = clean_html_entities(first_value(entry, ("Company2", "CompanyName", "Company", "Client")))
    project_manager = clean_html_entities(first_value(entry, ("Project_Manager3", "ProjectManager", "PM")))

    # Textbox37/38 are the default SSRS names for the status column
    status = clean_html_entities(first_value(entry, (
        "Status", "ProjectStatus", "Project_Status", "status_description",
        "StatusName", "Status_Name", "Textbox37", "Textbox38",
    )))
    lower_status = status.lower()
    is_active = not any(keyword in lower_status for keyword in INACTIVE_STATUS_KEYWORDS)

    budget = parse_number(first_value(entry, ("Quoted3", "Budget", "QuotedAmount")))
    spent = parse_number(first_value(entry, ("Actual_Cost", "ActualCost", "Spent")))
    estimated_cost = parse_number(first_value(entry, ("Estimated_Cost", "EstimatedCost")))
    actual_cost = parse_number(first_value(entry, ("Actual_Cost", "ActualCost")))

    hours_estimate = parse_number(first_value(entry, (
        "Estimated_Hours", "Estimated_Hours1", "EstimatedHours",
        "Hours_Budget", "HoursBudget", "Budget_Hours", "BudgetHours",
        "Total_Hours", "TotalHours", "Hours_Estimate", "HoursEstimate",
        "Est_Hours", "EstHours", "Est_Hrs", "EstHrs",
        "Budgeted_Hours", "BudgetedHours", "Project_Hours", "ProjectHours",
        "Scheduled_Hours", "ScheduledHours", "Planned_Hours", "PlannedHours",
    )))
    hours_actual = parse_number(first_value(entry, (
        "Actual_Hours", "Actual_Hours1", "ActualHours",
        "Hours_Actual", "HoursActual", "Hours_Used", "HoursUsed",
        "Worked_Hours", "WorkedHours", "Used_Hours", "UsedHours",
        "Logged_Hours", "LoggedHours", "Time_Actual", "TimeActual",
    )))
    hours_remaining = parse_number(first_value(entry, (
        "Hours_Remaining", "HoursRemaining", "Remaining_Hours", "RemainingHours",
        "Hours_Left", "HoursLeft", "Left_Hours", "LeftHours",
    )))

    if not hours_estimate and budget and budget > 0:
        logger.debug(f"Project {external_id}: no hours column, estimating from budget")
        hours_estimate = round(budget / FALLBACK_HOURLY_RATE, 2)

    if not hours_actual and actual_cost and actual_cost > 0:
        hours_actual = round(actual_cost / FALLBACK_HOURLY_RATE, 2)

    if not hours_remaining and hours_estimate and hours_actual is not None:
        hours_remaining = max(0.0, hours_estimate - hours_actual)
    elif not hours_remaining and estimated_cost and actual_cost is not None:
        hours_remaining = round(max(0.0, estimated_cost - actual_cost) / FALLBACK_HOURLY_RATE, 2)

    wip = first_value(entry, ("WIP1", "WIP"))
    pct_complete = round((parse_number(first_value(entry, ("Textbox232", "PercentComplete")) or "0") or 0) * 100, 1)
    notes = f"PM: {project_manager} | WIP: {wip} | % Complete: {pct_complete:g}%"

    fields = {
        "client_name": _or_none(client_name),
        "project_name": _or_none(project_name),
        "project_manager": _or_none(project_manager),
        "budget": _or_none(budget),
        "spent": _or_none(spent),
        "hours_estimate": _or_none(hours_estimate),
        "hours_actual": _or_none(hours_actual),
        "hours_remaining": hours_remaining or 0.0,
        "status": status or "Unknown",
        "is_active": is_active,
        "notes": notes,
    }
    return _build(EntityType.PROJECT, external_id, fields, entry)


def map_opportunity_entry(entry: Dict[str, str], index: int = 0) -> CanonicalRecord:
    """Map an Opportunity List entry to an OPPORTUNITY record.

    Reports without an id column get a synthetic id built from the
    company, the opportunity name and the first all-digit column, so the
    same row maps to the same id on every sync.
    """
    external_id = first_value(entry, (
        "Opp_RecID", "Opp_RecID1", "OppRecID", "Opportunity_RecID", "OpportunityRecID",
        "ID", "ID1", "OpportunityID", "Opportunity_ID", "Id", "Opp_ID", "OppID",
        "RecID", "RecId", "opp_recid", "opportunity_id",
    )).strip()

    opportunity_name = clean_html_entities(first_value(entry, (
        "Name", "Name1", "Opp_Name", "OppName", "OpportunityName", "Opportunity_Name",
        "Opportunity", "Description", "Opp_Description", "Summary",
    )))
    company_name = clean_html_entities(first_value(entry, (
        "Company_Name", "Company_Name1", "Company", "Company1", "CompanyName",
        "Account", "Account_Name", "AccountName", "Client", "ClientName", "Customer",
    )))

    if index == 0:
        logger.debug(f"Opportunity entry fields: {', '.join(entry.keys())}")

    if not external_id:
        first_numeric = next((value for value in entry.values() if value and value.isdigit()), "")
        external_id = _FALLBACK_ID_UNSAFE.sub(
            "_", f"opp_{company_name}_{opportunity_name}_{first_numeric}"
        )[:100]
        if index == 0:
            logger.warning(f"Opportunity feed has no id column; using generated id {external_id}")

    # Sales_Rep usually lists every employee, so it is tried last
    sales_rep = _first_single_value(entry, (
        "Sales_Rep_1", "SalesRep1", "Primary_Sales_Rep", "Primary_Rep", "PrimarySalesRep",
        "PrimaryRep", "Rep", "Rep1", "Owner", "Owner1", "Assigned_To", "AssignedTo",
        "Member", "Member1", "Member_Name", "MemberName", "SalesPerson", "Sales_Person",
        "Salesperson", "Sales_Rep", "SalesRep",
    ))
    stage = _first_single_value(entry, (
        "Sales_Stage", "SalesStage", "Stage", "Opp_Stage", "Status", "Opp_Status", "Status_Description",
    ), require_content=False)

    expected_revenue = parse_number(first_value(entry, (
        "Expected_Revenue", "ExpectedRevenue", "Revenue", "Amount", "Opp_Amount", "Total", "Value",
    )))
    close_date = first_value(entry, (
        "Expected_Close_Date", "ExpectedCloseDate", "Expected_Close", "Expected_Close1", "ExpectedClose",
        "CloseDate", "Close_Date", "Close_Date1", "Closed_Date", "ClosedDate", "Exp_Close", "ExpClose",
        "Est_Close", "EstClose", "Target_Close", "TargetClose", "Forecast_Close", "ForecastClose",
        "Due_Date", "DueDate",
    ))
    probability = parse_number(first_value(entry, (
        "Probability", "Probability1", "Prob", "Prob1", "Win_Probability", "WinProbability",
        "Win_Prob", "WinProb", "Opp_Probability", "OppProbability",
        "Percent", "Pct", "Confidence", "Win_Rate", "WinRate",
    )))
    if probability is not None:
        # Reports publish either a fraction (0.75) or a percentage (75)
        probability = int(round(probability if probability > 1 else probability * 100))

    fields = {
        "opportunity_name": _or_none(opportunity_name),
        "company_name": _or_none(company_name),
        "sales_rep": _or_none(sales_rep),
        "stage": _or_none(stage),
        "expected_revenue": _or_none(expected_revenue),
        "close_date": _or_none(close_date),
        "probability": probability,
        "notes": None,
    }
    return _build(EntityType.OPPORTUNITY, external_id, fields, entry)


def map_service_ticket_entry(entry: Dict[str, str]) -> CanonicalRecord:
    """Map a service ticket report entry to a SERVICE_TICKET record."""
    external_id = first_value(entry, (
        "TicketNbr", "Ticket_Number", "SR_RecID", "ID", "TicketID", "Ticket_ID", "Id",
    )).strip()

    fields = {
        "summary": _or_none(clean_html_entities(first_value(entry, ("Summary", "Description", "Title", "Subject")))),
        "status": _or_none(first_value(entry, (
            "status_description", "Status_Description", "Status", "TicketStatus", "Ticket_Status", "StatusName",
        ))),
        "priority": _or_none(first_value(entry, (
            "Urgency", "Priority_Description", "Priority", "PriorityName", "Priority_Name",
        ))),
        "assigned_to": _or_none(clean_html_entities(first_value(entry, (
            "team_name", "Assigned_To", "AssignedTo", "Owner", "Resource",
        )))),
        "company_name": _or_none(clean_html_entities(first_value(entry, (
            "Company_Name", "Company", "CompanyName", "Client",
        )))),
        "board_name": _or_none(first_value(entry, ("Board_Name", "Board", "BoardName", "ServiceBoard"))),
        "created_date": _or_none(first_value(entry, (
            "date_entered", "Date_Entered", "Created_Date", "CreatedDate", "DateEntered", "OpenDate",
        ))),
        "last_updated": _or_none(first_value(entry, (
            "last_updated", "Last_Updated", "LastUpdated", "DateUpdated", "ModifiedDate",
        ))),
        "due_date": _or_none(first_value(entry, ("DueDate", "Due_Date", "RequiredDate", "Deadline"))),
        "hours_estimate": _or_none(parse_number(first_value(entry, (
            "BudgetHours", "Budget_Hours", "EstimatedHours", "HoursEstimate",
        )))),
        "hours_actual": _or_none(parse_number(first_value(entry, (
            "ActualHours", "Actual_Hours", "HoursActual", "WorkedHours",
        )))),
        "hours_remaining": _or_none(parse_number(first_value(entry, (
            "RemainingHours", "Remaining_Hours", "HoursRemaining",
        )))),
        "budget": _or_none(parse_number(first_value(entry, ("Budget", "BudgetAmount", "Budget_Amount")))),
        "notes": _or_none(clean_html_entities(first_value(entry, ("Notes", "Comments", "InternalNotes")))),
    }
    return _build(EntityType.SERVICE_TICKET, external_id, fields, entry)


def map_entry(entity_type: EntityType, entry: Dict[str, str], index: int = 0) -> CanonicalRecord:
    """Map one flattened entry to a canonical record of the given type.

    Raises:
        ValueError: If the entry has no usable external id.
    """
    if entity_type == EntityType.PROJECT:
        return map_project_entry(entry)
    if entity_type == EntityType.OPPORTUNITY:
        return map_opportunity_entry(entry, index)
    if entity_type == EntityType.SERVICE_TICKET:
        return map_service_ticket_entry(entry)
    raise ValueError(f"Unsupported entity type: {entity_type}")


def _build(entity_type: EntityType, external_id: str, fields: Dict[str, Any], entry: Dict[str, str]) -> CanonicalRecord:
    if not external_id:
        raise ValueError(f"{entity_type.value} entry has no external id")
    return CanonicalRecord(entity_type=entity_type, external_id=external_id, fields=fields, raw_data=dict(entry))
