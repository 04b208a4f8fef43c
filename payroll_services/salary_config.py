"""
Payroll Configuration Maintenance (``payroll_services.salary_config``).

Responsibility
--------------
Create, update and delete the configuration the payroll orchestrator
reads: salary items, salary groups (with their calculation orders) and
tax formulas.  Every write is validated up front so that a configuration
that would fail at calculation time is rejected at save time instead.

Architecture position
---------------------
**Services layer**.  Each service receives the SQLAlchemy session through
its constructor, flushes but never commits.  Validation of salary groups is
delegated to ``SalaryItemResolver.find_issues`` so that save-time and
calculation-time checks are the same code.

Invariants enforced
-------------------
* Salary item names are unique (a name is a formula variable).
* Percentage item values are fractions within [0, 1].
* Formula item expressions parse before they are stored.
* A salary item that another member of a saved group references keeps
  its name, type, value, taxability and percentage base.
* A saved salary group has no issues (duplicate order, unknown or forward
  reference, cycle).
* Exactly one tax formula is the default once any default is set: saving a
  default clears the flag on every other formula.

Failure modes
-------------
* InvalidSalaryItemError           -- bad item definition.
* SalaryGroupValidationError       -- group has issues; carries all of them.
* PresetSalaryItemError            -- attempt to delete a preset item.
* SalaryItemInUseError             -- item still belongs to a group, or a
                                    referenced item would change.
* SalaryGroupInUseError            -- group still assigned to employees.
* DefaultTaxFormulaError           -- attempt to delete the default formula.
* InvalidTaxFormulaError           -- malformed bracket table.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from payroll_config import get_active_config
from payroll_config.schema import PayrollConfig
from payroll_engines.formula import FormulaEvaluator, parse_formula
from payroll_engines.salary_items import SalaryGroupIssue, SalaryItemResolver
from payroll_engines.tax import validate_levels
from payroll_kernel.domain.dtos import SalaryGroup, SalaryItem, SalaryItemType, TaxFormula
from payroll_kernel.exceptions import (
    DefaultTaxFormulaError,
    EmployeeNotFoundError,
    FormulaSyntaxError,
    InvalidSalaryItemError,
    InvalidTaxFormulaError,
    PresetSalaryItemError,
    SalaryGroupInUseError,
    SalaryGroupNotFoundError,
    SalaryGroupValidationError,
    SalaryItemInUseError,
    SalaryItemNotFoundError,
    TaxFormulaNotFoundError,
)
from payroll_kernel.logging_config import get_logger
from payroll_services.orm import (
    EmployeeModel,
    SalaryGroupItemModel,
    SalaryGroupModel,
    SalaryItemModel,
    TaxFormulaModel,
)

logger = get_logger("services.salary_config")


# =============================================================================
# Salary items
# =============================================================================


def _calculation_fields(item: SalaryItem) -> tuple:
    return (item.name, item.item_type, item.value, item.is_taxable, item.percentage_base)


class SalaryItemService:
    """CRUD for salary items with save-time validation."""

    def __init__(self, session: Session, config: PayrollConfig | None = None) -> None:
        self._session = session
        base_variable = (config or get_active_config()).percentage_base_variable
        self._evaluator = FormulaEvaluator(base_variable)

    def get_item(self, item_id: UUID) -> SalaryItem:
        return self._get_model(item_id).to_dto()

    def list_items(self) -> list[SalaryItem]:
        models = self._session.execute(
            select(SalaryItemModel).order_by(SalaryItemModel.name)
        ).scalars()
        return [m.to_dto() for m in models]

    def create_item(self, item: SalaryItem, actor_id: UUID | None = None) -> SalaryItem:
        """Validate and insert a salary item.

        Raises:
            InvalidSalaryItemError: Bad value, unparseable formula, or the
                name is already taken.
        """
        self._validate(item)
        self._check_name_free(item.name, exclude_id=None)
        self._session.add(SalaryItemModel.from_dto(item, created_by_id=actor_id))
        self._session.flush()
        logger.info(
            "salary_item_created",
            extra={"item_id": str(item.id), "item_name": item.name, "item_type": item.item_type.value},
        )
        return item

    def update_item(self, item: SalaryItem, actor_id: UUID | None = None) -> SalaryItem:
        """Validate and apply changes to a salary item.

        Only ``description`` and ``subsidy_cycle`` may change once another
        member of a saved group reads the item.

        Raises:
            SalaryItemNotFoundError: Unknown id.
            InvalidSalaryItemError: Bad value or the new name is taken.
            SalaryItemInUseError: A calculated field of a referenced item
                changed.
        """
        model = self._get_model(item.id)
        self._validate(item)
        self._check_name_free(item.name, exclude_id=item.id)

        current = model.to_dto()
        if _calculation_fields(current) != _calculation_fields(item):
            group_names = self._groups_reading(current)
            if group_names:
                logger.warning(
                    "salary_item_update_rejected",
                    extra={"item_id": str(item.id), "item_name": current.name, "group_names": group_names},
                )
                raise SalaryItemInUseError(current.name, group_names)

        model.apply_dto(item)
        model.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "salary_item_updated",
            extra={"item_id": str(item.id), "item_name": item.name},
        )
        return model.to_dto()

    def delete_item(self, item_id: UUID) -> None:
        """Delete a salary item.

        Raises:
            SalaryItemNotFoundError: Unknown id.
            PresetSalaryItemError: Preset items are permanent.
            SalaryItemInUseError: The item belongs to at least one group.
        """
        model = self._get_model(item_id)
        if model.is_preset:
            raise PresetSalaryItemError(model.name)

        group_names = list(self._session.execute(
            select(SalaryGroupModel.name)
            .join(SalaryGroupItemModel, SalaryGroupItemModel.group_id == SalaryGroupModel.id)
            .where(SalaryGroupItemModel.salary_item_id == item_id)
            .order_by(SalaryGroupModel.name)
        ).scalars())
        if group_names:
            raise SalaryItemInUseError(model.name, group_names)

        self._session.delete(model)
        self._session.flush()
        logger.info("salary_item_deleted", extra={"item_id": str(item_id), "item_name": model.name})

    def _get_model(self, item_id: UUID) -> SalaryItemModel:
        model = self._session.get(SalaryItemModel, item_id)
        if model is None:
            raise SalaryItemNotFoundError(item_id)
        return model

    def _groups_reading(self, item: SalaryItem) -> list[str]:
        """Names of saved groups in which another member references ``item``."""
        containing = (
            select(SalaryGroupItemModel.group_id)
            .where(SalaryGroupItemModel.salary_item_id == item.id)
        )
        rows = self._session.execute(
            select(SalaryGroupModel.name, SalaryItemModel)
            .join(SalaryGroupItemModel, SalaryGroupItemModel.group_id == SalaryGroupModel.id)
            .join(SalaryItemModel, SalaryItemModel.id == SalaryGroupItemModel.salary_item_id)
            .where(SalaryGroupModel.id.in_(containing))
            .where(SalaryItemModel.id != item.id)
            .order_by(SalaryGroupModel.name)
        ).all()

        group_names: list[str] = []
        for group_name, member in rows:
            if group_name in group_names:
                continue
            if item.name in self._evaluator.references(member.to_dto()):
                group_names.append(group_name)
        return group_names

    def _check_name_free(self, name: str, exclude_id: UUID | None) -> None:
        stmt = select(SalaryItemModel.id).where(SalaryItemModel.name == name)
        if exclude_id is not None:
            stmt = stmt.where(SalaryItemModel.id != exclude_id)
        if self._session.execute(stmt).first() is not None:
            raise InvalidSalaryItemError(name, "name already exists")

    @staticmethod
    def _validate(item: SalaryItem) -> None:
        if not item.name or not item.name.strip():
            raise InvalidSalaryItemError(item.name, "name must not be empty")
        if "}" in item.name:
            raise InvalidSalaryItemError(item.name, "name must not contain '}'")

        if item.item_type == SalaryItemType.PERCENTAGE:
            if not Decimal("0") <= item.value <= Decimal("1"):
                raise InvalidSalaryItemError(
                    item.name, f"percentage value {item.value} is outside [0, 1]",
                )
        elif item.item_type == SalaryItemType.FORMULA:
            if not item.value.strip():
                raise InvalidSalaryItemError(item.name, "formula must not be empty")
            try:
                parse_formula(item.value)
            except FormulaSyntaxError as e:
                raise InvalidSalaryItemError(item.name, str(e)) from e


# =============================================================================
# Salary groups
# =============================================================================


class SalaryGroupService:
    """
    Salary group maintenance.

    Contract:
        ``save_group`` runs the same dependency validation the resolver runs
        before evaluation, and stores nothing when any issue is found.
    """

    def __init__(
        self,
        session: Session,
        config: PayrollConfig | None = None,
        resolver: SalaryItemResolver | None = None,
    ) -> None:
        self._session = session
        if resolver is None:
            if config is not None:
                resolver = SalaryItemResolver(
                    FormulaEvaluator(config.percentage_base_variable),
                    context_variables=config.context_variables,
                    decimal_places=config.decimal_places,
                )
            else:
                resolver = SalaryItemResolver()
        self._resolver = resolver

    def get_group(self, group_id: UUID) -> SalaryGroup:
        return self._get_model(group_id).to_dto()

    def list_groups(self) -> list[SalaryGroup]:
        models = self._session.execute(
            select(SalaryGroupModel).order_by(SalaryGroupModel.name)
        ).scalars()
        return [m.to_dto() for m in models]

    def validate_group_formulas(
        self,
        group: SalaryGroup,
        context_variables: Iterable[str] = (),
    ) -> list[SalaryGroupIssue]:
        """Every issue in ``group``; nothing is stored."""
        items = self._load_items(m.salary_item_id for m in group.members)
        return self._resolver.find_issues(group, items, context_variables)

    def save_group(self, group: SalaryGroup, actor_id: UUID | None = None) -> SalaryGroup:
        """Validate and upsert a salary group with its members.

        Raises:
            SalaryGroupValidationError: Carrying every issue found.
        """
        issues = self.validate_group_formulas(group)
        if issues:
            logger.warning(
                "salary_group_rejected",
                extra={
                    "group_name": group.name,
                    "issue_kinds": sorted({i.kind.value for i in issues}),
                    "issue_count": len(issues),
                },
            )
            raise SalaryGroupValidationError(group.name, issues)

        model = self._session.get(SalaryGroupModel, group.id)
        created = model is None
        if model is None:
            model = SalaryGroupModel(id=group.id, created_by_id=actor_id)
            self._session.add(model)
        else:
            model.updated_by_id = actor_id
            # Old rows must be gone before new ones reuse their orders.
            model.members.clear()
            self._session.flush()

        model.name = group.name
        model.description = group.description
        model.members.extend(
            SalaryGroupItemModel(
                salary_item_id=member.salary_item_id,
                calculation_order=member.calculation_order,
                created_by_id=actor_id,
            )
            for member in group.ordered_members()
        )
        self._session.flush()

        logger.info(
            "salary_group_saved",
            extra={
                "group_id": str(group.id),
                "group_name": group.name,
                "member_count": len(group.members),
                "group_created": created,
            },
        )
        return model.to_dto()

    def delete_group(self, group_id: UUID) -> None:
        model = self._get_model(group_id)
        employee_count = self._session.execute(
            select(func.count())
            .select_from(EmployeeModel)
            .where(EmployeeModel.salary_group_id == group_id)
        ).scalar_one()
        if employee_count:
            raise SalaryGroupInUseError(model.name, employee_count)

        self._session.delete(model)
        self._session.flush()
        logger.info("salary_group_deleted", extra={"group_id": str(group_id), "group_name": model.name})

    def assign_to_employee(self, group_id: UUID, employee_id: UUID) -> None:
        self._get_model(group_id)
        employee = self._session.get(EmployeeModel, employee_id)
        if employee is None:
            raise EmployeeNotFoundError(employee_id)
        employee.salary_group_id = group_id
        self._session.flush()
        logger.info(
            "salary_group_assigned",
            extra={"group_id": str(group_id), "employee_id": str(employee_id)},
        )

    def assign_to_department(self, group_id: UUID, department_id: UUID) -> int:
        """Assign the group to every active employee in a department.

        Returns:
            Number of employees updated.
        """
        self._get_model(group_id)
        result = self._session.execute(
            update(EmployeeModel)
            .where(
                EmployeeModel.department_id == department_id,
                EmployeeModel.is_active.is_(True),
            )
            .values(salary_group_id=group_id)
            .execution_options(synchronize_session="fetch")
        )
        self._session.flush()
        logger.info(
            "salary_group_assigned_to_department",
            extra={
                "group_id": str(group_id),
                "department_id": str(department_id),
                "employee_count": result.rowcount,
            },
        )
        return result.rowcount

    def _get_model(self, group_id: UUID) -> SalaryGroupModel:
        model = self._session.get(SalaryGroupModel, group_id)
        if model is None:
            raise SalaryGroupNotFoundError(group_id)
        return model

    def _load_items(self, item_ids: Iterable[UUID]) -> dict[UUID, SalaryItem]:
        ids = list(item_ids)
        if not ids:
            return {}
        models = self._session.execute(
            select(SalaryItemModel).where(SalaryItemModel.id.in_(ids))
        ).scalars()
        return {m.id: m.to_dto() for m in models}


# =============================================================================
# Tax formulas
# =============================================================================


class TaxFormulaService:
    """Tax formula maintenance and seeding of the configured tables."""

    def __init__(self, session: Session, config: PayrollConfig | None = None) -> None:
        self._session = session
        self._config = config

    def get_formula(self, formula_id: UUID) -> TaxFormula:
        return self._get_model(formula_id).to_dto()

    def list_formulas(self) -> list[TaxFormula]:
        models = self._session.execute(
            select(TaxFormulaModel).order_by(TaxFormulaModel.name)
        ).scalars()
        return [m.to_dto() for m in models]

    def save_formula(self, formula: TaxFormula, actor_id: UUID | None = None) -> TaxFormula:
        """Validate and upsert a tax formula.

        Saving a formula with ``is_default`` set clears the flag on every
        other formula.

        Raises:
            InvalidTaxFormulaError: Malformed levels, negative threshold, or
                a name already used by another formula.
        """
        validate_levels(formula.name, formula.levels)
        if formula.threshold < 0:
            raise InvalidTaxFormulaError(formula.name, "threshold must not be negative")

        clash = self._session.execute(
            select(TaxFormulaModel.id).where(
                TaxFormulaModel.name == formula.name,
                TaxFormulaModel.id != formula.id,
            )
        ).first()
        if clash is not None:
            raise InvalidTaxFormulaError(formula.name, "name already exists")

        if formula.is_default:
            self._session.execute(
                update(TaxFormulaModel)
                .where(TaxFormulaModel.id != formula.id, TaxFormulaModel.is_default.is_(True))
                .values(is_default=False)
                .execution_options(synchronize_session="fetch")
            )

        model = self._session.get(TaxFormulaModel, formula.id)
        if model is None:
            model = TaxFormulaModel.from_dto(formula, created_by_id=actor_id)
            self._session.add(model)
        else:
            model.levels.clear()
            self._session.flush()
            model.apply_dto(formula)
            model.updated_by_id = actor_id
        self._session.flush()

        logger.info(
            "tax_formula_saved",
            extra={
                "formula_id": str(formula.id),
                "formula_name": formula.name,
                "level_count": len(formula.levels),
                "is_default": formula.is_default,
            },
        )
        return model.to_dto()

    def delete_formula(self, formula_id: UUID) -> None:
        """Delete a non-default formula.

        Employees pointing at it fall back to the default formula.

        Raises:
            DefaultTaxFormulaError: The formula is the current default.
        """
        model = self._get_model(formula_id)
        if model.is_default:
            raise DefaultTaxFormulaError(model.name)

        self._session.execute(
            update(EmployeeModel)
            .where(EmployeeModel.tax_formula_id == formula_id)
            .values(tax_formula_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self._session.delete(model)
        self._session.flush()
        logger.info("tax_formula_deleted", extra={"formula_id": str(formula_id), "formula_name": model.name})

    def ensure_default_formulas(self) -> list[TaxFormula]:
        """Seed the configured tax tables when no formula exists yet.

        Returns:
            The formulas created (empty when formulas already existed).
        """
        existing = self._session.execute(
            select(func.count()).select_from(TaxFormulaModel)
        ).scalar_one()
        if existing:
            return []

        config = self._config or get_active_config()

        created = [
            self.save_formula(definition.to_formula())
            for definition in config.tax.default_formulas
        ]
        logger.info(
            "tax_formulas_seeded",
            extra={
                "formula_names": [f.name for f in created],
                "config_version": config.version,
            },
        )
        return created

    def _get_model(self, formula_id: UUID) -> TaxFormulaModel:
        model = self._session.get(TaxFormulaModel, formula_id)
        if model is None:
            raise TaxFormulaNotFoundError(formula_id)
        return model
