from enum import Enum


class Verdict(str, Enum):
    SAFE = "safe"
    MALICIOUS = "malicious"
    UNKNOWN = "unknown"
    #operational failure, no provider produced a report
    ERROR = "error"

    def __str__(self) -> str:
        return self.value
