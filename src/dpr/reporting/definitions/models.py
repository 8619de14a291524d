# src/dpr/reporting/definitions/models.py
"""
Product definition documents.

A product definition bundles datasources, datasets (SQL queries plus their
schema), reports (dataset views with a field specification) and the policies
that guard them. References between entities use the ``$ref:<id>`` form.
"""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dpr.reporting.core.enums import LowercaseEnum
from dpr.reporting.core.errors import ValidationError
from dpr.reporting.security.policy import Policy

REF_PREFIX = "$ref:"


def strip_ref(value: str) -> str:
    return value[len(REF_PREFIX):] if value.startswith(REF_PREFIX) else value


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class DatasourceConnection(LowercaseEnum):
    FEDERATED = "federated"
    DATA_WAREHOUSE = "datawarehouse"
    AWS_DATA_CATALOG = "awsdatacatalog"


class SqlDialect(LowercaseEnum):
    ORACLE11G = "oracle/11g"
    POSTGRES19 = "postgres/19"
    REDSHIFT4 = "redshift/4"
    ATHENA3 = "athena/3"


class ParameterType(LowercaseEnum):
    STRING = "string"
    DATE = "date"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"
    LONG = "long"
    INTEGER = "integer"
    DOUBLE = "double"
    FLOAT = "float"
    BOOLEAN = "boolean"


class FilterType(LowercaseEnum):
    RADIO = "radio"
    SELECT = "select"
    MULTISELECT = "multiselect"
    DATE_RANGE = "daterange"
    DATE = "date"
    AUTOCOMPLETE = "autocomplete"
    TEXT = "text"


class Datasource(_Model):
    id: str
    name: str
    database: Optional[str] = None
    catalog: Optional[str] = None
    connection: Optional[DatasourceConnection] = None
    dialect: Optional[SqlDialect] = None

    @property
    def effective_dialect(self) -> SqlDialect:
        """Dialect of the engine that runs the composed query.

        Federated queries are passed through to the source database, Oracle
        unless the datasource says otherwise.
        """
        if self.dialect is not None:
            return self.dialect
        if self.connection in (None, DatasourceConnection.FEDERATED):
            return SqlDialect.ORACLE11G
        return SqlDialect.ATHENA3


class FilterOption(_Model):
    name: str
    display: str


class DynamicFilterOption(_Model):
    minimum_length: Optional[int] = Field(default=None, alias="minimumLength")
    return_as_static_options: bool = Field(
        default=False, alias="returnAsStaticOptions"
    )
    maximum_options: Optional[int] = Field(default=None, alias="maximumOptions")


class FilterDefinition(_Model):
    type: FilterType
    mandatory: bool = False
    pattern: Optional[str] = None
    static_options: Optional[List[FilterOption]] = Field(
        default=None, alias="staticOptions"
    )
    dynamic_options: Optional[DynamicFilterOption] = Field(
        default=None, alias="dynamicOptions"
    )
    default_value: Optional[str] = Field(default=None, alias="defaultValue")
    interactive: Optional[bool] = None


class SchemaField(_Model):
    name: str
    type: ParameterType
    display: str = ""
    filter: Optional[FilterDefinition] = None


class Schema(_Model):
    field: List[SchemaField] = Field(default_factory=list)


class Parameter(_Model):
    index: int = 0
    name: str
    report_field_type: ParameterType = Field(
        default=ParameterType.STRING, alias="reportFieldType"
    )
    filter_type: FilterType = Field(default=FilterType.TEXT, alias="filterType")
    display: str = ""
    mandatory: bool = False


class Dataset(_Model):
    id: str
    name: str
    datasource: str
    query: str
    schema_: Schema = Field(alias="schema")
    parameters: List[Parameter] = Field(default_factory=list)
    # cron expression of a scheduled refresh into a reports table
    schedule: Optional[str] = None


class ReportFilter(_Model):
    name: str
    query: str


class ReportField(_Model):
    name: str
    display: str = ""
    filter: Optional[FilterDefinition] = None
    sortable: bool = True
    defaultsort: bool = False
    visible: Optional[bool] = None
    formula: Optional[str] = None

    @property
    def column(self) -> str:
        return strip_ref(self.name)


class Specification(_Model):
    template: str = "list"
    field: List[ReportField] = Field(default_factory=list)


class ReportSummary(_Model):
    id: str
    template: str
    dataset: str


class Report(_Model):
    id: str
    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    dataset: str
    specification: Optional[Specification] = None
    filter: Optional[ReportFilter] = None
    summary: List[ReportSummary] = Field(default_factory=list)


class MetaData(_Model):
    author: Optional[str] = None
    version: Optional[str] = None
    owner: Optional[str] = None
    purpose: Optional[str] = None


class ProductDefinition(_Model):
    id: str
    name: str
    description: Optional[str] = None
    metadata: Optional[MetaData] = None
    scheduled: bool = False
    datasources: List[Datasource] = Field(default_factory=list, alias="datasource")
    datasets: List[Dataset] = Field(default_factory=list, alias="dataset")
    reports: List[Report] = Field(default_factory=list, alias="report")
    policies: List[Policy] = Field(default_factory=list, alias="policy")

    def find_dataset(self, ref: str) -> Optional[Dataset]:
        dataset_id = strip_ref(ref)
        return next((d for d in self.datasets if d.id == dataset_id), None)

    def find_datasource(self, ref: str) -> Optional[Datasource]:
        datasource_id = strip_ref(ref)
        return next(
            (d for d in self.datasources if d.id == datasource_id),
            None,
        )

    def single_report(self, report_id: str) -> "SingleReportProductDefinition":
        """Resolve one report variant and everything it references."""
        report = next((r for r in self.reports if r.id == report_id), None)
        if report is None:
            raise ValidationError(f"Invalid report variant id provided: {report_id}")

        dataset = self.find_dataset(report.dataset)
        if dataset is None:
            raise ValidationError(
                f"Report {report_id} references unknown dataset {report.dataset}"
            )
        datasource = self.find_datasource(dataset.datasource)
        if datasource is None:
            raise ValidationError(
                f"Dataset {dataset.id} references unknown datasource "
                f"{dataset.datasource}"
            )

        return SingleReportProductDefinition(
            id=self.id,
            name=self.name,
            description=self.description,
            metadata=self.metadata,
            scheduled=self.scheduled,
            datasource=datasource,
            report_dataset=dataset,
            report=report,
            policies=self.policies,
            all_datasets=self.datasets,
        )


class SingleReportProductDefinition(_Model):
    """A product definition narrowed to a single report variant."""

    id: str
    name: str
    description: Optional[str] = None
    metadata: Optional[MetaData] = None
    scheduled: bool = False
    datasource: Datasource
    report_dataset: Dataset
    report: Report
    policies: List[Policy] = Field(default_factory=list)
    all_datasets: List[Dataset] = Field(default_factory=list)

    def find_summary_dataset(self, summary_id: str) -> Dataset:
        summary = next((s for s in self.report.summary if s.id == summary_id), None)
        if summary is None:
            raise ValidationError(f"Invalid summary id provided: {summary_id}")
        dataset_id = strip_ref(summary.dataset)
        dataset = next((d for d in self.all_datasets if d.id == dataset_id), None)
        if dataset is None:
            raise ValidationError(
                f"Summary {summary_id} references unknown dataset {summary.dataset}"
            )
        return dataset
