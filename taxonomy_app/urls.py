from django.urls import path
from . import views

urlpatterns = [
    path('', views.home, name='home'),                        # main page
    path('show/', views.show, name='show'),                   # node descriptions
    path('lineage/', views.lineage, name='lineage'),          # root-first lineages
    path('tree/', views.tree, name='tree'),                   # tree from the root to the given taxa
    path('subtree/', views.subtree, name='subtree'),          # tree below one taxon
    path('lca/', views.lca, name='lca'),                      # pairwise least common ancestors
    path('populate/', views.run_populate, name='run_populate'),  # (re)build the local database
]
