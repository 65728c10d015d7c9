from .priority import calculate_priority, calculate_full_priority
from .priority_heap import PriorityHeap, Entry, InvalidEntryError, DuplicateEntryError

__all__ = ['calculate_priority', 'calculate_full_priority', 'PriorityHeap', 'Entry',
           'InvalidEntryError', 'DuplicateEntryError']
