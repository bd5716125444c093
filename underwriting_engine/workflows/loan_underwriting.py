# underwriting_engine/workflows/loan_underwriting.py

from typing import Dict, List

from underwriting_engine.schemas.transaction import LoanType
from underwriting_engine.schemas.workflow import (
    Assignee,
    TaskCategory,
    TaskPriority,
    UnderwritingTask,
)

# Task ids referenced by the executor and the decision rules
DOCUMENTATION_VERIFICATION = "UW-DOC-001"
CREDIT_ANALYSIS = "UW-VER-001"
INCOME_VERIFICATION = "UW-VER-002"
DTI_CALCULATION = "UW-ANA-001"
COLLATERAL_VALUATION = "UW-COL-001"
RISK_ASSESSMENT = "UW-RISK-001"
COMPLIANCE_CHECK = "UW-COM-001"
FINAL_DECISION = "UW-DEC-001"

EQUIPMENT_VALUATION = "UW-EQP-001"
LIEN_FILING_SEARCH = "UW-EQP-002"
PROPERTY_APPRAISAL = "UW-RE-001"
ENVIRONMENTAL_ASSESSMENT = "UW-RE-002"
SBA_ELIGIBILITY = "UW-SBA-001"
SBA_FORMS = "UW-SBA-002"


# 8-task base checklist shared by every loan type
BASE_CHECKLIST: List[UnderwritingTask] = [
    UnderwritingTask(
        id=DOCUMENTATION_VERIFICATION,
        title="Documentation Verification",
        description="Verify the credit application is complete and required documents are received",
        category=TaskCategory.DOCUMENTATION,
        priority=TaskPriority.HIGH,
        assigned_to=Assignee.EVA,
        automation_available=True,
        estimated_time=10,
    ),
    UnderwritingTask(
        id=CREDIT_ANALYSIS,
        title="Credit Bureau Analysis",
        description="Pull and analyze credit reports from all three bureaus",
        category=TaskCategory.VERIFICATION,
        priority=TaskPriority.HIGH,
        assigned_to=Assignee.EVA,
        automation_available=True,
        estimated_time=15,
        dependencies=[DOCUMENTATION_VERIFICATION],
    ),
    UnderwritingTask(
        id=INCOME_VERIFICATION,
        title="Income Verification",
        description="Verify income through bank statements, tax returns, and paystubs",
        category=TaskCategory.VERIFICATION,
        priority=TaskPriority.HIGH,
        assigned_to=Assignee.EVA,
        automation_available=True,
        estimated_time=25,
        dependencies=[DOCUMENTATION_VERIFICATION],
    ),
    UnderwritingTask(
        id=DTI_CALCULATION,
        title="Debt-to-Income Calculation",
        description="Calculate and verify debt-to-income ratio",
        category=TaskCategory.ANALYSIS,
        priority=TaskPriority.HIGH,
        assigned_to=Assignee.EVA,
        automation_available=True,
        estimated_time=15,
        dependencies=[INCOME_VERIFICATION],
    ),
    UnderwritingTask(
        id=COLLATERAL_VALUATION,
        title="Collateral Valuation",
        description="Verify collateral documents and valuation reports",
        category=TaskCategory.DOCUMENTATION,
        priority=TaskPriority.MEDIUM,
        assigned_to=Assignee.HUMAN,
        automation_available=False,
        estimated_time=30,
    ),
    UnderwritingTask(
        id=RISK_ASSESSMENT,
        title="Credit Risk Assessment",
        description="Comprehensive credit risk assessment",
        category=TaskCategory.ANALYSIS,
        priority=TaskPriority.HIGH,
        assigned_to=Assignee.EVA,
        automation_available=True,
        estimated_time=30,
        dependencies=[CREDIT_ANALYSIS, DTI_CALCULATION],
    ),
    UnderwritingTask(
        id=COMPLIANCE_CHECK,
        title="Regulatory Compliance Check",
        description="Regulatory, AML and OFAC screening",
        category=TaskCategory.COMPLIANCE,
        priority=TaskPriority.HIGH,
        assigned_to=Assignee.EVA,
        automation_available=True,
        estimated_time=20,
    ),
    UnderwritingTask(
        id=FINAL_DECISION,
        title="Underwriting Decision",
        description="Assemble the underwriting package for the final recommendation",
        category=TaskCategory.APPROVAL,
        priority=TaskPriority.URGENT,
        assigned_to=Assignee.EVA,
        automation_available=True,
        estimated_time=30,
        dependencies=[RISK_ASSESSMENT, COMPLIANCE_CHECK],
    ),
]


_EQUIPMENT_TASKS = [
    UnderwritingTask(
        id=EQUIPMENT_VALUATION,
        title="Equipment Valuation",
        description="Verify equipment value and condition through appraisal",
        category=TaskCategory.VERIFICATION,
        priority=TaskPriority.HIGH,
        assigned_to=Assignee.HUMAN,
        automation_available=False,
        estimated_time=45,
    ),
    UnderwritingTask(
        id=LIEN_FILING_SEARCH,
        title="UCC Filing Search",
        description="Search for existing UCC lien filings on the equipment",
        category=TaskCategory.VERIFICATION,
        priority=TaskPriority.MEDIUM,
        assigned_to=Assignee.EVA,
        automation_available=True,
        estimated_time=15,
    ),
]

# Loan-type additions. They feed the decision as information only and are
# not wired into the base graph.
LOAN_SPECIFIC_TASKS: Dict[LoanType, List[UnderwritingTask]] = {
    LoanType.EQUIPMENT: _EQUIPMENT_TASKS,
    LoanType.VEHICLE: _EQUIPMENT_TASKS,
    LoanType.REAL_ESTATE: [
        UnderwritingTask(
            id=PROPERTY_APPRAISAL,
            title="Property Appraisal",
            description="Order and review professional property appraisal",
            category=TaskCategory.VERIFICATION,
            priority=TaskPriority.HIGH,
            assigned_to=Assignee.HUMAN,
            automation_available=False,
            estimated_time=60,
        ),
        UnderwritingTask(
            id=ENVIRONMENTAL_ASSESSMENT,
            title="Environmental Assessment",
            description="Review environmental assessment report",
            category=TaskCategory.VERIFICATION,
            priority=TaskPriority.MEDIUM,
            assigned_to=Assignee.HUMAN,
            automation_available=False,
            estimated_time=30,
        ),
    ],
    LoanType.SBA: [
        UnderwritingTask(
            id=SBA_ELIGIBILITY,
            title="SBA Eligibility Check",
            description="Verify borrower and business meet SBA requirements",
            category=TaskCategory.COMPLIANCE,
            priority=TaskPriority.HIGH,
            assigned_to=Assignee.EVA,
            automation_available=True,
            estimated_time=25,
        ),
        UnderwritingTask(
            id=SBA_FORMS,
            title="SBA Form Completion",
            description="Complete and verify SBA required forms",
            category=TaskCategory.DOCUMENTATION,
            priority=TaskPriority.HIGH,
            assigned_to=Assignee.HUMAN,
            automation_available=False,
            estimated_time=40,
        ),
    ],
}
