"""
Graph Navigator Service
Resolves the entry step of a flow and the successor of a step.
"""
from typing import Dict, List, Optional

from utils.log_utils import LogUtil
from database.flow_db import FlowDB
from exceptions.flow_exception import FlowNotFoundException, GraphMalformedException
from models.flow_data import FlowData, FlowStep, FlowLink


class FlowGraph:
    """
    Immutable snapshot of one flow's steps and links, loaded once per invocation.
    """

    def __init__(self, flow: FlowData, steps: List[FlowStep], links: List[FlowLink]):
        self.flow = flow
        self.steps: Dict[str, FlowStep] = {step.id: step for step in steps}
        self._unconditional_out: Dict[str, List[FlowLink]] = {}
        self._unconditional_targets = set()
        for link in links:
            if not link.is_unconditional():
                continue
            self._unconditional_out.setdefault(link.source_step_id, []).append(link)
            self._unconditional_targets.add(link.target_step_id)

    @property
    def flow_id(self) -> str:
        return self.flow.id

    def has_step(self, step_id: Optional[str]) -> bool:
        return step_id is not None and step_id in self.steps

    def get_step(self, step_id: str) -> FlowStep:
        step = self.steps.get(step_id)
        if step is None:
            raise GraphMalformedException(
                message=f"Step {step_id} does not exist in flow {self.flow_id}",
                step_id=step_id
            )
        return step

    def entry_step(self) -> str:
        """
        A step is an entry candidate when no unconditional link targets it.
        Ties are broken by the lexicographically smallest step id.
        """
        candidates = [step_id for step_id in self.steps if step_id not in self._unconditional_targets]
        if not candidates:
            raise GraphMalformedException(message=f"Flow {self.flow_id} has no entry step")
        return min(candidates)

    def successor(self, from_step_id: str) -> Optional[str]:
        """
        Target of the single unconditional link leaving from_step_id, or None.
        """
        outgoing = self._unconditional_out.get(from_step_id, [])
        if not outgoing:
            return None
        if len(outgoing) > 1:
            raise GraphMalformedException(
                message=f"Step {from_step_id} has {len(outgoing)} unconditional outgoing links",
                step_id=from_step_id
            )
        target = outgoing[0].target_step_id
        if target not in self.steps:
            raise GraphMalformedException(
                message=f"Link {outgoing[0].id} points to missing step {target}",
                step_id=from_step_id
            )
        return target


class GraphNavigatorService:
    def __init__(self, log_util: LogUtil, flow_db: FlowDB):
        self.log_util = log_util
        self.flow_db = flow_db

    async def load_graph(self, flow_id: str) -> FlowGraph:
        """
        Load a flow with its steps and links.
        Raises FlowNotFoundException when the flow is missing or inactive and
        FlowValidationException when a step configuration does not match its kind.
        """
        flow = await self.flow_db.get_flow(flow_id)
        if flow is None or not flow.is_active:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found or inactive")

        steps = await self.flow_db.get_steps(flow_id)
        links = await self.flow_db.get_links(flow_id)

        self.log_util.debug(
            service_name="GraphNavigatorService",
            message=f"[GRAPH] Loaded flow {flow_id} with {len(steps)} step(s) and {len(links)} link(s)"
        )
        return FlowGraph(flow=flow, steps=steps, links=links)

    async def entry_step(self, flow_id: str) -> str:
        graph = await self.load_graph(flow_id)
        return graph.entry_step()

    async def successor(self, flow_id: str, from_step_id: str) -> Optional[str]:
        graph = await self.load_graph(flow_id)
        return graph.successor(from_step_id)
