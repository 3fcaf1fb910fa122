from typing import Annotated, Optional

import strawberry
from strawberry.schema.config import StrawberryConfig
from strawberry.types import Info

from pipecd_api.graphql.context import GraphQLContext
from pipecd_api.graphql.types import (
    Activity,
    ActivityInput,
    ActivityUpdateInput,
    Deal,
    DealHistoryEntry,
    DealInput,
    DealUpdateInput,
    Lead,
    LeadInput,
    LeadUpdateInput,
    Organization,
    OrganizationInput,
    OrganizationUpdateInput,
    Person,
    PersonInput,
    PersonUpdateInput,
    Viewer,
    from_record,
    input_values,
)


CrmInfo = Info[GraphQLContext, None]
DealIdArgument = Annotated[strawberry.ID, strawberry.argument(name="dealId")]


@strawberry.type
class Query:
    @strawberry.field
    def health(self) -> str:
        return "ok"

    @strawberry.field
    def me(self, info: CrmInfo) -> Viewer:
        identity = info.context.dispatch.me(info.context.request_context)
        return Viewer(id=strawberry.ID(identity.id), email=identity.email)

    @strawberry.field
    async def people(self, info: CrmInfo) -> list[Person]:
        ctx = info.context
        records = await ctx.run(ctx.dispatch.list_all, "people", ctx.request_context, "person")
        return [from_record(Person, record) for record in records]

    @strawberry.field
    async def person(self, info: CrmInfo, id: strawberry.ID) -> Optional[Person]:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.get, "person", ctx.request_context, "person", id)
        return from_record(Person, record) if record is not None else None

    @strawberry.field
    async def organizations(self, info: CrmInfo) -> list[Organization]:
        ctx = info.context
        records = await ctx.run(ctx.dispatch.list_all, "organizations", ctx.request_context, "organization")
        return [from_record(Organization, record) for record in records]

    @strawberry.field
    async def organization(self, info: CrmInfo, id: strawberry.ID) -> Optional[Organization]:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.get, "organization", ctx.request_context, "organization", id)
        return from_record(Organization, record) if record is not None else None

    @strawberry.field
    async def deals(self, info: CrmInfo) -> list[Deal]:
        ctx = info.context
        records = await ctx.run(ctx.dispatch.list_all, "deals", ctx.request_context, "deal")
        return [from_record(Deal, record) for record in records]

    @strawberry.field
    async def deal(self, info: CrmInfo, id: strawberry.ID) -> Optional[Deal]:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.get, "deal", ctx.request_context, "deal", id)
        return from_record(Deal, record) if record is not None else None

    @strawberry.field(name="dealHistory")
    async def deal_history(self, info: CrmInfo, deal_id: DealIdArgument) -> list[DealHistoryEntry]:
        ctx = info.context
        entries = await ctx.run(ctx.dispatch.deal_history, ctx.request_context, deal_id)
        return [from_record(DealHistoryEntry, entry) for entry in entries]

    @strawberry.field
    async def leads(self, info: CrmInfo) -> list[Lead]:
        ctx = info.context
        records = await ctx.run(ctx.dispatch.list_all, "leads", ctx.request_context, "lead")
        return [from_record(Lead, record) for record in records]

    @strawberry.field
    async def lead(self, info: CrmInfo, id: strawberry.ID) -> Optional[Lead]:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.get, "lead", ctx.request_context, "lead", id)
        return from_record(Lead, record) if record is not None else None

    @strawberry.field
    async def activities(self, info: CrmInfo) -> list[Activity]:
        ctx = info.context
        records = await ctx.run(ctx.dispatch.list_all, "activities", ctx.request_context, "activity")
        return [from_record(Activity, record) for record in records]

    @strawberry.field
    async def activity(self, info: CrmInfo, id: strawberry.ID) -> Optional[Activity]:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.get, "activity", ctx.request_context, "activity", id)
        return from_record(Activity, record) if record is not None else None


@strawberry.type
class Mutation:
    # --- Person ---

    @strawberry.mutation(name="createPerson")
    async def create_person(self, info: CrmInfo, input: PersonInput) -> Person:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.create, "createPerson", ctx.request_context, "person", input_values(input))
        return from_record(Person, record)

    @strawberry.mutation(name="updatePerson")
    async def update_person(self, info: CrmInfo, id: strawberry.ID, input: PersonUpdateInput) -> Person:
        ctx = info.context
        record = await ctx.run(
            ctx.dispatch.update, "updatePerson", ctx.request_context, "person", id, input_values(input)
        )
        return from_record(Person, record)

    @strawberry.mutation(name="deletePerson")
    async def delete_person(self, info: CrmInfo, id: strawberry.ID) -> bool:
        ctx = info.context
        return await ctx.run(ctx.dispatch.delete, "deletePerson", ctx.request_context, "person", id)

    # --- Organization ---

    @strawberry.mutation(name="createOrganization")
    async def create_organization(self, info: CrmInfo, input: OrganizationInput) -> Organization:
        ctx = info.context
        record = await ctx.run(
            ctx.dispatch.create, "createOrganization", ctx.request_context, "organization", input_values(input)
        )
        return from_record(Organization, record)

    @strawberry.mutation(name="updateOrganization")
    async def update_organization(
        self, info: CrmInfo, id: strawberry.ID, input: OrganizationUpdateInput
    ) -> Organization:
        ctx = info.context
        record = await ctx.run(
            ctx.dispatch.update, "updateOrganization", ctx.request_context, "organization", id, input_values(input)
        )
        return from_record(Organization, record)

    @strawberry.mutation(name="deleteOrganization")
    async def delete_organization(self, info: CrmInfo, id: strawberry.ID) -> bool:
        ctx = info.context
        return await ctx.run(ctx.dispatch.delete, "deleteOrganization", ctx.request_context, "organization", id)

    # --- Deal ---

    @strawberry.mutation(name="createDeal")
    async def create_deal(self, info: CrmInfo, input: DealInput) -> Deal:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.create, "createDeal", ctx.request_context, "deal", input_values(input))
        return from_record(Deal, record)

    @strawberry.mutation(name="updateDeal")
    async def update_deal(self, info: CrmInfo, id: strawberry.ID, input: DealUpdateInput) -> Deal:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.update, "updateDeal", ctx.request_context, "deal", id, input_values(input))
        return from_record(Deal, record)

    @strawberry.mutation(name="deleteDeal")
    async def delete_deal(self, info: CrmInfo, id: strawberry.ID) -> bool:
        ctx = info.context
        return await ctx.run(ctx.dispatch.delete, "deleteDeal", ctx.request_context, "deal", id)

    # --- Lead ---

    @strawberry.mutation(name="createLead")
    async def create_lead(self, info: CrmInfo, input: LeadInput) -> Lead:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.create, "createLead", ctx.request_context, "lead", input_values(input))
        return from_record(Lead, record)

    @strawberry.mutation(name="updateLead")
    async def update_lead(self, info: CrmInfo, id: strawberry.ID, input: LeadUpdateInput) -> Lead:
        ctx = info.context
        record = await ctx.run(ctx.dispatch.update, "updateLead", ctx.request_context, "lead", id, input_values(input))
        return from_record(Lead, record)

    @strawberry.mutation(name="deleteLead")
    async def delete_lead(self, info: CrmInfo, id: strawberry.ID) -> bool:
        ctx = info.context
        return await ctx.run(ctx.dispatch.delete, "deleteLead", ctx.request_context, "lead", id)

    # --- Activity ---

    @strawberry.mutation(name="createActivity")
    async def create_activity(self, info: CrmInfo, input: ActivityInput) -> Activity:
        ctx = info.context
        record = await ctx.run(
            ctx.dispatch.create, "createActivity", ctx.request_context, "activity", input_values(input)
        )
        return from_record(Activity, record)

    @strawberry.mutation(name="updateActivity")
    async def update_activity(self, info: CrmInfo, id: strawberry.ID, input: ActivityUpdateInput) -> Activity:
        ctx = info.context
        record = await ctx.run(
            ctx.dispatch.update, "updateActivity", ctx.request_context, "activity", id, input_values(input)
        )
        return from_record(Activity, record)

    @strawberry.mutation(name="deleteActivity")
    async def delete_activity(self, info: CrmInfo, id: strawberry.ID) -> bool:
        ctx = info.context
        return await ctx.run(ctx.dispatch.delete, "deleteActivity", ctx.request_context, "activity", id)


# Entity fields keep the store's snake_case names; operations are named explicitly.
schema = strawberry.Schema(query=Query, mutation=Mutation, config=StrawberryConfig(auto_camel_case=False))
