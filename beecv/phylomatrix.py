import copy
import logging
import numpy as np
import pandas as pd
from io import StringIO
from Bio import Phylo
from Bio.Phylo.BaseTree import Tree
from beecv.errors import UnknownSpecies, DegenerateInput, TopologyMismatch, ModelSpecificationError

def stringttophylo(string):
    handle = StringIO(string)
    tree = Phylo.read(handle, "newick")
    return tree

def readtrees(path, fmt='newick'):
    """
    All trees of a (multi-)tree file
    """
    trees = list(Phylo.parse(path, fmt))
    if len(trees) == 0:
        raise ModelSpecificationError("No tree found in {}".format(path))
    logging.info("Loaded {} tree(s) from {}".format(len(trees), path))
    return trees

def tipnames(tree):
    taxa = [tip.name for tip in tree.get_terminals()]
    if len(taxa) != len(set(taxa)):
        raise ModelSpecificationError("Duplicated tip IDs detected")
    return taxa

def checkbranchlengths(tree):
    for clade in tree.find_clades():
        if clade.branch_length is not None and clade.branch_length < 0:
            raise DegenerateInput("Negative branch length on {}".format(clade.name or "an internal node"))

def edgemap(tree):
    """
    Preorder list of (key, clade) where key is the descendant tip set.
    Unary chains share a tip set and are told apart by their rank in the chain.
    """
    seen, edges = {}, []
    for clade in tree.find_clades(order='preorder'):
        tips = frozenset(tip.name for tip in clade.get_terminals())
        rank = seen.get(tips, 0); seen[tips] = rank + 1
        edges.append(((tips, rank), clade))
    return edges

def consensustree(trees):
    """
    Consensus of trees sharing one topology, with averaged branch lengths
    """
    trees = list(trees)
    if len(trees) == 0:
        raise ModelSpecificationError("At least one tree is needed")
    reference_tips = set(tipnames(trees[0]))
    lengths = {}
    reference_keys = None
    for tree in trees:
        if set(tipnames(tree)) != reference_tips:
            raise TopologyMismatch("Trees do not share the same tip set")
        checkbranchlengths(tree)
        edges = edgemap(tree)
        keys = {key for key, _ in edges}
        if reference_keys is None: reference_keys = keys
        elif keys != reference_keys:
            raise TopologyMismatch("Trees differ in topology; resolve conflicts before averaging branch lengths")
        for key, clade in edges:
            lengths.setdefault(key, []).append(clade.branch_length)
    consensus = copy.deepcopy(trees[0])
    for key, clade in edgemap(consensus):
        bls = lengths[key]
        if all(bl is None for bl in bls): clade.branch_length = None
        else: clade.branch_length = float(np.mean([bl or 0.0 for bl in bls]))
    logging.info("Consensus of {} tree(s) over {} tips".format(len(trees), len(reference_tips)))
    return consensus

def prunetree(tree, species):
    """
    A new tree holding only the given species; tree itself is left untouched
    """
    taxa = tipnames(tree)
    missing = set(species) - set(taxa)
    if missing:
        raise UnknownSpecies(missing)
    pruned = copy.deepcopy(tree)
    target = set(species)
    tips = {tip.name: tip for tip in pruned.get_terminals()}
    for name in taxa:
        if name not in target: pruned.prune(tips[name])
    logging.debug("Pruned {} of {} tips".format(len(taxa) - len(target), len(taxa)))
    return pruned

# Shared root-to-MRCA path lengths under Brownian motion
def get_covariance_matrix(tree, taxa=None):
    if taxa is None: species = tipnames(tree)
    else: species = list(taxa)
    n = len(species)
    covariance_matrix = np.zeros((n, n))
    for i, sp1 in enumerate(species):
        for j in range(i, n):
            mrca = tree.common_ancestor(sp1, species[j])
            covariance_matrix[i, j] = covariance_matrix[j, i] = tree.distance(mrca)
    return covariance_matrix, species

def cov2cor(covariance_matrix, species):
    depth = np.diag(covariance_matrix)
    if np.any(depth <= 0):
        zero = [str(sp) for sp, d in zip(species, depth) if d <= 0]
        raise DegenerateInput("Zero root-to-tip distance for: {}".format(", ".join(zero)))
    scale = np.sqrt(depth)
    correlation = np.clip(covariance_matrix / np.outer(scale, scale), 0.0, 1.0)
    np.fill_diagonal(correlation, 1.0)
    return correlation

def get_correlation_matrix(tree, taxa=None):
    covariance_matrix, species = get_covariance_matrix(tree, taxa=taxa)
    correlation = cov2cor(covariance_matrix, species)
    return pd.DataFrame(correlation, index=species, columns=species)

def build_correlation_matrix(trees, species):
    """
    Consensus, pruning and Brownian-motion correlation in one go.
    Returns the labelled correlation matrix and the pruned consensus tree.
    """
    species = list(species)
    if len(species) != len(set(species)):
        raise ModelSpecificationError("Duplicated species in the target set")
    if isinstance(trees, Tree): trees = [trees]
    consensus = consensustree(trees)
    pruned = prunetree(consensus, species)
    correlation = get_correlation_matrix(pruned, taxa=species)
    logging.info("Phylogenetic correlation matrix of {} species".format(len(species)))
    return correlation, pruned

def writematrix(correlation, output="Phylo_Correlation.tsv"):
    correlation.to_csv(output, header=True, index=True, sep='\t')
    logging.info("Correlation matrix written to {}".format(output))

def readmatrix(path):
    correlation = pd.read_csv(path, header=0, index_col=0, sep='\t')
    correlation.index = correlation.index.astype(str)
    correlation.columns = correlation.columns.astype(str)
    return correlation

def writetree(tree, output="Pruned_Tree.nwk"):
    Phylo.write(tree, output, "newick")
