class BeecvError(Exception):
    """Base class for fatal errors raised by beecv"""


class InsufficientSampleSize(BeecvError):
    pass


class DegenerateInput(BeecvError):
    pass


class UnknownSpecies(BeecvError):
    def __init__(self, species):
        self.species = sorted(species)
        super().__init__("Species absent from the tree: {}".format(", ".join(self.species)))


class ModelSpecificationError(BeecvError):
    pass


class TopologyMismatch(ModelSpecificationError):
    pass


class SamplingUnreliable(UserWarning):
    """
    Convergence diagnostics failed; the posterior is returned but flagged
    """
